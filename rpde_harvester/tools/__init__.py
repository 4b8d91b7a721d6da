"""MCP tools for rpde_harvester."""
