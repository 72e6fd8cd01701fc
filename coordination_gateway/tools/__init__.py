# coordination_gateway/tools/__init__.py
"""
Tools Registry Module

This module centralizes all available coordination tools. Importing the
tool modules registers them; the helpers below give the servers and the CLI
the tool schemas and lookup by name.
"""

from typing import List, Optional

# Importing the modules registers their tools
from . import context_tools, conversation_tools, resolution_tools  # noqa: F401
from .base import Tool
from .registry import registry

ALL_TOOLS: List[Tool] = registry.get_tools()

def get_tools_schema(area: Optional[str] = None) -> List[dict]:
    """
    Generate the JSON Schema for the available tools.

    Args:
        area (str, optional): Only tools of this area (conversation, context, resolution)

    Returns:
        List[dict]: One entry per tool with name, area, description and parameters
    """
    return registry.schemas(area)

def find_tool_by_name(name: str) -> Optional[Tool]:
    """
    Find a specific tool by its name.

    Args:
        name (str): The name of the tool to find (e.g., "conversation_initiate")

    Returns:
        Optional[Tool]: The tool instance if found, None if not found
    """
    return registry.get_tool(name)

def get_all_tool_names() -> List[str]:
    return [tool.name for tool in ALL_TOOLS]

def tool_exists(name: str) -> bool:
    return find_tool_by_name(name) is not None
