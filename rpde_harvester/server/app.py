"""rpde_harvester - MCP server

This module builds the FastMCP server exposing the harvest tools over STDIO,
SSE or Streamable HTTP. Optionally the periodic harvest loop runs inside the
same event loop so the tools can pause, resume and inspect it.
"""

import asyncio
import os
import sys
from typing import Optional

import click
from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings

from rpde_harvester.config import HarvesterConfig, get_config
from rpde_harvester.harvest.scheduler import Scheduler
from rpde_harvester.logging_config import get_logger, setup_logging
from rpde_harvester.storage import database
from rpde_harvester.tools.harvest_tools import harvest_tools, set_scheduler


def create_mcp_server(config: Optional[HarvesterConfig] = None) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        config: Optional harvester configuration

    Returns:
        Configured FastMCP server instance
    """
    if config is None:
        config = get_config()

    logger = get_logger(__name__)

    # Configure DNS rebinding protection (disabled by default for development)
    dns_protection = os.getenv("MCP_DNS_REBINDING_PROTECTION", "false").lower() == "true"
    allowed_hosts_env = os.getenv("MCP_ALLOWED_HOSTS", "")
    allowed_hosts = [h.strip() for h in allowed_hosts_env.split(",") if h.strip()] if allowed_hosts_env else []

    logger.info(f"DNS rebinding protection: {'enabled' if dns_protection else 'disabled'}")

    mcp_server = FastMCP(
        config.name or "rpde_harvester",
        transport_security=TransportSecuritySettings(
            enable_dns_rebinding_protection=dns_protection,
            allowed_hosts=allowed_hosts,
        ),
    )

    register_tools(mcp_server)
    logger.info("Server initialization complete")
    return mcp_server


def register_tools(mcp_server: FastMCP) -> None:
    """Register all harvest tools with the server."""
    logger = get_logger(__name__)

    for tool_func in harvest_tools:
        mcp_server.tool(name=tool_func.__name__)(tool_func)
        logger.info(f"Registered harvest tool: {tool_func.__name__}")

    logger.info(f"Server '{mcp_server.name}' initialized with {len(harvest_tools)} tools")


async def serve(
    config: HarvesterConfig,
    transport: str = "stdio",
    host: str = "127.0.0.1",
    port: int = 3001,
    harvest: bool = False,
) -> None:
    """Run the MCP server, optionally with the periodic harvest in the background."""
    logger = get_logger(__name__)
    server = create_mcp_server(config)

    database.configure_database(config.db_path)
    await database.get_database()

    scheduler = Scheduler(config)
    set_scheduler(scheduler)

    harvest_task = None
    if harvest:
        harvest_task = asyncio.create_task(scheduler.run_forever(), name="harvest")

    try:
        if transport == "stdio":
            logger.info("Starting server with STDIO transport")
            await server.run_stdio_async()
        elif transport == "sse":
            logger.info(f"Starting server with SSE transport on {host}:{port}")
            server.settings.host = host
            server.settings.port = port
            await server.run_sse_async()
        elif transport == "streamable-http":
            logger.info(f"Starting server with Streamable HTTP transport on {host}:{port}")
            server.settings.host = host
            server.settings.port = port
            server.settings.streamable_http_path = "/mcp"
            await server.run_streamable_http_async()
        else:
            raise ValueError(f"Unknown transport: {transport}")
    finally:
        scheduler.stop()
        if harvest_task is not None:
            await asyncio.gather(harvest_task, return_exceptions=True)
        set_scheduler(None)
        await scheduler.aclose()
        await database.close_database()


@click.command()
@click.option(
    "--port",
    default=3001,
    help="Port to listen on for SSE or Streamable HTTP transport"
)
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (use 0.0.0.0 for Docker)"
)
@click.option(
    "--transport",
    type=click.Choice(["stdio", "sse", "streamable-http"]),
    default="stdio",
    help="Transport type (stdio, sse, or streamable-http)"
)
@click.option(
    "--harvest/--no-harvest",
    default=False,
    help="Also run the periodic harvest loop in the background"
)
def main(port: int, host: str, transport: str, harvest: bool) -> int:
    """Run the rpde_harvester MCP server with specified transport."""
    config = get_config()
    setup_logging(config)
    logger = get_logger(__name__)

    try:
        asyncio.run(serve(config, transport=transport, host=host, port=port, harvest=harvest))
        return 0
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        return 0
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
