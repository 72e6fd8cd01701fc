# coordination_gateway/mcp/server.py
"""
MCP (Model Context Protocol) Server

This server exposes the coordination tools as JSON-RPC 2.0 methods. It uses
the Werkzeug WSGI server for HTTP handling and the json-rpc library for the
protocol. Each tool from the registry is registered as a method of the same
name; ``list_tools`` returns their schemas.

Werkzeug serves requests on worker threads while the tools are coroutines,
so every call is handed to the runtime's gateway loop and awaited there.
"""

import concurrent.futures
from typing import Any, Dict, List, Optional

from jsonrpc import JSONRPCResponseManager, dispatcher
from loguru import logger
from werkzeug.serving import run_simple
from werkzeug.wrappers import Request, Response

from ..runtime import get_runtime
from ..settings import settings
from ..tools import ALL_TOOLS, find_tool_by_name, get_tools_schema


def create_tool_handler(tool_name: str):
    """
    Factory function that creates a JSON-RPC handler for a specific tool.

    Args:
        tool_name (str): The name of the tool this handler will execute

    Returns:
        function: A handler function that can be registered with the dispatcher
    """
    def handler(**kwargs) -> Dict[str, Any]:
        tool = find_tool_by_name(tool_name)

        if tool is None:
            return {
                "success": False,
                "error": f"Tool '{tool_name}' not found in registry"
            }

        try:
            return get_runtime().bridge.call(tool.run(**kwargs))
        except concurrent.futures.TimeoutError:
            logger.error(f"⏱️ Tool {tool_name} timed out after {settings.TOOL_TIMEOUT}s")
            return {
                "success": False,
                "error": f"Tool '{tool_name}' timed out",
                "error_type": "timeout",
            }

    return handler


def list_tools() -> List[Dict[str, Any]]:
    return get_tools_schema()


# Register every tool as a JSON-RPC method named after the tool
for tool in ALL_TOOLS:
    dispatcher.add_method(create_tool_handler(tool.name), tool.name)
dispatcher.add_method(list_tools, "list_tools")


def application(environ, start_response):
    """
    WSGI application function that handles HTTP requests.

    Parses the JSON-RPC request body, dispatches it and returns the JSON-RPC
    response.
    """
    request = Request(environ)
    request_body = request.get_data(as_text=True)
    response = JSONRPCResponseManager.handle(request_body, dispatcher)
    # Notifications produce no response body
    body = response.json if response is not None else ""
    wsgi_response = Response(body, mimetype='application/json')
    return wsgi_response(environ, start_response)


def start_mcp_server(host: Optional[str] = None, port: Optional[int] = None):
    """
    Start the MCP server.

    Starts the gateway loop (and its timeout monitor), then serves JSON-RPC
    requests until interrupted.

    Args:
        host (str): The host address to bind to. If None, uses settings.MCP_SERVER_HOST.
        port (int): The port to listen on. If None, uses settings.MCP_SERVER_PORT.
    """
    if host is None:
        host = settings.MCP_SERVER_HOST
    if port is None:
        port = settings.MCP_SERVER_PORT

    runtime = get_runtime()
    runtime.bridge.call(runtime.start())
    print(f"🚀 MCP Server running at http://{host}:{port}")
    print(f"   Available tools: {[tool.name for tool in ALL_TOOLS]}")
    print("   Press Ctrl+C to stop the server")

    try:
        run_simple(
            hostname=host,
            port=port,
            application=application,
            use_reloader=False,
            use_debugger=False,
            threaded=True  # Allow multiple requests simultaneously
        )
    finally:
        runtime.bridge.call(runtime.stop())
        runtime.bridge.stop()
