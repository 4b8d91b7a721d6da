"""Fixtures for integration tests.

Integration tests use a real on-disk SQLite database and, for the tool tests,
an in-memory MCP client session connected to the FastMCP server.
"""

import json

import pytest
from mcp import types
from mcp.shared.memory import create_connected_server_and_client_session

from rpde_harvester.harvest.scheduler import Scheduler
from rpde_harvester.server.app import create_mcp_server
from rpde_harvester.storage import database
from rpde_harvester.tools.harvest_tools import set_scheduler


@pytest.fixture
async def disk_db(config):
    """Open the singleton connection on a throwaway database file."""
    database.configure_database(config.db_path)
    db = await database.get_database()
    yield db
    await database.close_database()
    database.configure_database(None)


@pytest.fixture
async def mcp_session(disk_db, config, http_client):
    """Client session talking to the tool server with a test scheduler."""
    scheduler = Scheduler(config, client=http_client)
    set_scheduler(scheduler)
    server = create_mcp_server(config)

    async with create_connected_server_and_client_session(server._mcp_server) as session:
        yield session

    set_scheduler(None)


def extract_result(result: types.CallToolResult) -> dict:
    """Decode the JSON dictionary a tool returned."""
    assert result.content, "tool returned no content"
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return json.loads(content.text)
