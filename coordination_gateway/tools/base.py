# coordination_gateway/tools/base.py
"""
Base class for all coordination tools.

This defines the standard interface that all tools must implement so the
JSON-RPC server, the API server and the CLI can treat them uniformly:
a name, a description, a JSON schema for the parameters, and an async
``run`` that always returns a dict with a ``success`` key.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Type

from loguru import logger
from pydantic import BaseModel, ValidationError

from ..errors import CoordinationError
from ..runtime import GatewayRuntime, get_runtime


class Tool(ABC):
    """
    Abstract base class for all coordination tools.

    Subclasses declare ``args_model`` (a pydantic model for the parameters)
    and implement ``execute``. ``run`` validates the raw keyword arguments
    and turns every failure into a structured error result.
    """

    name: str  # Unique identifier for the tool (e.g., "conversation_initiate")
    description: str  # Human-readable description of what the tool does
    args_model: Type[BaseModel]

    def get_parameters_schema(self) -> Dict[str, Any]:
        """
        Return the JSON Schema for this tool's parameters.

        Returns:
            Dict[str, Any]: JSON Schema describing the tool's parameters
        """
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return schema

    @property
    def runtime(self) -> GatewayRuntime:
        return get_runtime()

    @abstractmethod
    async def execute(self, args: BaseModel) -> Dict[str, Any]:
        """
        Perform the operation with validated arguments.

        Returns:
            Dict[str, Any]: JSON-serializable result (``success`` is added by ``run``)
        """
        pass

    async def run(self, **kwargs) -> Dict[str, Any]:
        """
        Validate the arguments and execute the tool.

        Args:
            **kwargs: Parameters passed by the caller (validated by Pydantic)

        Returns:
            Dict[str, Any]: Result of the operation with 'success' status
        """
        try:
            args = self.args_model(**kwargs)
        except ValidationError as e:
            return {
                "success": False,
                "error": f"Invalid parameters: {e.errors()[0]['msg']}",
                "error_type": "validation_error",
                "details": e.errors(include_url=False, include_context=False),
            }

        try:
            result = await self.execute(args)
        except CoordinationError as e:
            logger.info(f"🛑 {self.name} rejected: {e.message}")
            return e.to_dict()
        except Exception as e:
            logger.exception(f"❌ {self.name} failed unexpectedly")
            return {
                "success": False,
                "error": f"Unexpected error: {str(e)}",
                "error_type": "internal_error",
            }
        return {"success": True, **result}
