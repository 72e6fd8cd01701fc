from typing import Any, Dict, List, Optional, Type

from loguru import logger
from pydantic import BaseModel

from .base import Tool


class ToolRegistry:
    """
    Coordination tools by name, grouped by the area they act on
    (``conversation``, ``context`` or ``resolution``, taken from the module
    that defines them). Tool classes register themselves via
    ``@register_tool``.
    """

    def __init__(self):
        self._tools: Dict[str, Tool] = {}
        self._areas: Dict[str, str] = {}

    def register(self, tool_cls: Type[Tool], area: Optional[str] = None):
        """
        Instantiate ``tool_cls`` and add it. Names are unique and every tool
        must declare a pydantic ``args_model``.
        """
        name = getattr(tool_cls, "name", "")
        if not name:
            raise ValueError(f"{tool_cls.__name__} does not declare a tool name")
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")
        args_model = getattr(tool_cls, "args_model", None)
        if not (isinstance(args_model, type) and issubclass(args_model, BaseModel)):
            raise ValueError(f"Tool '{name}' needs a pydantic args_model")

        self._tools[name] = tool_cls()
        self._areas[name] = area or tool_cls.__module__.rsplit(".", 1)[-1].replace("_tools", "")
        logger.debug(f"🔧 Registered tool {name} ({self._areas[name]})")
        return tool_cls

    def get_tools(self, area: Optional[str] = None) -> List[Tool]:
        return [tool for name, tool in self._tools.items() if area is None or self._areas[name] == area]

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def area_of(self, name: str) -> Optional[str]:
        return self._areas.get(name)

    def areas(self) -> List[str]:
        return sorted(set(self._areas.values()))

    def schemas(self, area: Optional[str] = None) -> List[Dict[str, Any]]:
        """Name, area, description and parameter schema of each tool, for list_tools and /api/tools."""
        return [
            {
                "name": tool.name,
                "area": self._areas[tool.name],
                "description": tool.description,
                "parameters": tool.get_parameters_schema(),
            }
            for tool in self.get_tools(area)
        ]


# Global registry instance
registry = ToolRegistry()


def register_tool(cls):
    """
    Decorator to register a tool class.

    Usage:
        @register_tool
        class ContextGetTool(Tool):
            ...
    """
    registry.register(cls)
    return cls
