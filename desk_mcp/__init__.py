"""
MCP Server for Standing Desk Control.

This package provides a Model Context Protocol (MCP) server that exposes
desk position and movement as tools that LLMs can call.
"""

from desk_mcp.server import close_desk_connection, get_desk, mcp, run_server

__all__ = ["mcp", "run_server", "get_desk", "close_desk_connection"]
