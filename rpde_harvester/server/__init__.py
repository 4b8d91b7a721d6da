"""MCP server package initialization"""

from rpde_harvester.server.app import create_mcp_server, serve

__all__ = ["create_mcp_server", "serve"]
