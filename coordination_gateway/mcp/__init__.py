# coordination_gateway/mcp/__init__.py
"""
MCP (Model Context Protocol) Subpackage

JSON-RPC server exposing the coordination tools, and the matching client.
"""

from .client import call_tool, call_tool_async, test_connection
from .server import application, start_mcp_server

__all__ = [
    "application",
    "start_mcp_server",
    "call_tool",
    "call_tool_async",
    "test_connection",
]
