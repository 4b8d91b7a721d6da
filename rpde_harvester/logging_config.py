"""Logging setup for rpde_harvester."""

import logging
import sys
from typing import Optional

from rpde_harvester.config import HarvesterConfig

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"
DATE_FORMAT = "%H:%M:%S"

logger = logging.getLogger("rpde_harvester")


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the rpde_harvester namespace."""
    if name == "rpde_harvester" or name.startswith("rpde_harvester."):
        return logging.getLogger(name)
    return logger.getChild(name)


def setup_logging(config: Optional[HarvesterConfig] = None) -> None:
    """Configure the package logger once.

    Logs go to stderr so that the STDIO transport of the tool server keeps
    stdout to itself.
    """
    level = config.log_level if config else "INFO"

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False

    logger.setLevel(level)

    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
