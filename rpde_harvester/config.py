"""Configuration for rpde_harvester.

Values come from defaults overridden by RPDE_HARVESTER_* environment variables.
CLI options override individual fields after loading.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

ENV_PREFIX = "RPDE_HARVESTER_"

DEFAULT_DIRECTORY_URL = "http://dataset-directory.herokuapp.com/datasets"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def default_db_path() -> Path:
    """Get the database path, respecting RPDE_HARVESTER_DB_PATH for testing."""
    env_path = os.environ.get(ENV_PREFIX + "DB_PATH")
    if env_path:
        return Path(env_path)
    return Path.home() / ".rpde_harvester" / "rpde_harvester.db"


@dataclass
class HarvesterConfig:
    """Runtime settings for the harvester, CLI and tool server."""

    name: str = "rpde_harvester"
    log_level: str = "INFO"
    db_path: Path = field(default_factory=default_db_path)
    directory_url: str = DEFAULT_DIRECTORY_URL
    # Minimum seconds between two requests to the same publisher host
    min_interval: float = 5.0
    request_timeout: float = 30.0
    max_workers: int = 4
    max_pages_per_sweep: int = 1000
    sweep_interval: float = 60 * 60
    collate_interval: float = 6 * 60 * 60
    user_agent: str = "RPDEHarvester/0.1 (+https://openactive.io)"

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: If any setting is out of range
        """
        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.log_level}")
        if self.min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.max_pages_per_sweep < 1:
            raise ValueError("max_pages_per_sweep must be >= 1")
        if self.sweep_interval <= 0 or self.collate_interval <= 0:
            raise ValueError("sweep_interval and collate_interval must be > 0")


_FIELD_TYPES = {
    "name": str,
    "log_level": str,
    "db_path": Path,
    "directory_url": str,
    "min_interval": float,
    "request_timeout": float,
    "max_workers": int,
    "max_pages_per_sweep": int,
    "sweep_interval": float,
    "collate_interval": float,
    "user_agent": str,
}


def load_config(environ: Optional[dict] = None) -> HarvesterConfig:
    """Build a config from defaults and RPDE_HARVESTER_* environment variables.

    Args:
        environ: Mapping to read instead of os.environ

    Returns:
        Validated HarvesterConfig

    Raises:
        ValueError: If a variable cannot be converted or is out of range
    """
    if environ is None:
        environ = os.environ

    config = HarvesterConfig()
    for name, convert in _FIELD_TYPES.items():
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is None or raw == "":
            continue
        try:
            setattr(config, name, convert(raw))
        except ValueError as e:
            raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e

    config.log_level = config.log_level.upper()
    config.validate()
    return config


_config: Optional[HarvesterConfig] = None


def get_config() -> HarvesterConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config

    if _config is None:
        _config = load_config()
    return _config
