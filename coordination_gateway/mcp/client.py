# coordination_gateway/mcp/client.py
"""
MCP (Model Context Protocol) Client

Sends JSON-RPC 2.0 requests to the gateway's MCP server. Supports both
synchronous (requests) and asynchronous (httpx) calls. Transport problems
are returned as ``{"success": False, "error": ...}`` like tool failures.
"""

import itertools
from typing import Any, Dict, Optional

import httpx
import requests

from ..settings import settings

_ids = itertools.count(1)


def _payload(tool_name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "method": tool_name,
        "params": arguments,
        "id": next(_ids)
    }


def _unwrap(result: Dict[str, Any]) -> Dict[str, Any]:
    if "error" in result:
        return {"success": False, "error": result["error"], "original_response": result}
    return result.get("result", {"success": False, "error": "No result returned"})


# -----------------------------------------------------------------------------
# ASYNCHRONOUS IMPLEMENTATION
# -----------------------------------------------------------------------------

async def call_tool_async(tool_name: str, arguments: Dict[str, Any], url: Optional[str] = None) -> Dict[str, Any]:
    """Execute a tool asynchronously using httpx."""
    url = url or settings.mcp_url
    try:
        async with httpx.AsyncClient(timeout=settings.TOOL_TIMEOUT) as client:
            response = await client.post(url, json=_payload(tool_name, arguments))
            response.raise_for_status()
            return _unwrap(response.json())
    except httpx.ConnectError:
        return {"success": False, "error": f"Cannot connect to MCP server at {url}. Is it running?"}
    except httpx.TimeoutException:
        return {"success": False, "error": "Request timed out"}
    except httpx.HTTPError as e:
        return {"success": False, "error": f"HTTP error: {str(e)}"}


# -----------------------------------------------------------------------------
# SYNCHRONOUS IMPLEMENTATION
# -----------------------------------------------------------------------------

def call_tool(tool_name: str, arguments: Dict[str, Any], url: Optional[str] = None) -> Dict[str, Any]:
    """Execute a tool synchronously using requests."""
    url = url or settings.mcp_url
    try:
        response = requests.post(url, json=_payload(tool_name, arguments), timeout=settings.TOOL_TIMEOUT)
        response.raise_for_status()
        return _unwrap(response.json())
    except requests.exceptions.ConnectionError:
        return {"success": False, "error": f"Cannot connect to server at {url}"}
    except requests.exceptions.Timeout:
        return {"success": False, "error": "Request timed out"}
    except requests.exceptions.RequestException as e:
        return {"success": False, "error": f"Error: {str(e)}"}


def test_connection(url: Optional[str] = None) -> bool:
    """Check that the MCP server answers."""
    res = call_tool("quorum_check", {"total_participants": 1, "actual_participants": 1, "requirement": 1.0}, url)
    return "Cannot connect" not in str(res.get("error", ""))
