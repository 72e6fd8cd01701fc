import asyncio

import pytest
from pydantic import BaseModel

from coordination_gateway.tools import find_tool_by_name, get_all_tool_names, get_tools_schema, tool_exists
from coordination_gateway.tools.base import Tool
from coordination_gateway.tools.registry import ToolRegistry

class EchoArgs(BaseModel):
    text: str

# Mock Tool 1
class MockTool1(Tool):
    name = "mock_tool_1"
    description = "Mock tool 1"
    args_model = EchoArgs
    async def execute(self, args): return {"echo": args.text}

def test_manual_registration():
    registry = ToolRegistry()
    registry.register(MockTool1)

    tools = registry.get_tools()
    assert len(tools) == 1
    assert tools[0].name == "mock_tool_1"
    assert registry.get_tool("mock_tool_1") is tools[0]

def test_decorator_registration():
    registry = ToolRegistry()

    def local_register_tool(cls):
        registry.register(cls)
        return cls

    @local_register_tool
    class DecoratedTool(Tool):
        name = "decorated_tool"
        description = "Decorated"
        args_model = EchoArgs
        async def execute(self, args): return {}

    tools = registry.get_tools()
    assert len(tools) == 1
    assert tools[0].name == "decorated_tool"

def test_duplicate_registration_rejected():
    registry = ToolRegistry()
    registry.register(MockTool1)
    with pytest.raises(ValueError):
        registry.register(MockTool1)

def test_get_unknown_tool():
    registry = ToolRegistry()
    assert registry.get_tool("nonexistent") is None

def test_run_wraps_result_and_validation_errors():
    tool = MockTool1()
    assert asyncio.run(tool.run(text="hi")) == {"success": True, "echo": "hi"}

    failed = asyncio.run(tool.run())
    assert failed["success"] is False
    assert failed["error_type"] == "validation_error"

def test_schema_comes_from_args_model():
    schema = MockTool1().get_parameters_schema()
    assert schema["properties"]["text"]["type"] == "string"
    assert schema["required"] == ["text"]

def test_global_registry_exposes_coordination_tools():
    names = get_all_tool_names()
    for expected in (
        "conversation_initiate", "conversation_status", "conversation_complete", "conversation_resume",
        "message_route", "routing_rule_add", "routing_rules_list",
        "context_update", "context_get", "context_snapshot", "context_rollback", "context_verify", "context_conflict_resolve",
        "conflict_resolve", "quorum_check", "coordination_metrics",
    ):
        assert expected in names
    assert tool_exists("quorum_check")
    assert find_tool_by_name("missing") is None
    assert {entry["name"] for entry in get_tools_schema()} == set(names)

def test_tool_needs_an_args_model():
    class NoArgsTool(Tool):
        name = "no_args"
        description = "Missing args model"
        async def execute(self, args): return {}

    with pytest.raises(ValueError):
        ToolRegistry().register(NoArgsTool)

def test_tools_are_grouped_by_area():
    schemas = get_tools_schema("context")
    assert {entry["name"] for entry in schemas} == {
        "context_update", "context_get", "context_snapshot", "context_rollback", "context_verify",
        "context_conflict_resolve",
    }
    assert all(entry["area"] == "context" for entry in schemas)

    registry = ToolRegistry()
    registry.register(MockTool1, area="testing")
    assert registry.areas() == ["testing"]
    assert registry.area_of("mock_tool_1") == "testing"
    assert registry.get_tools("other") == []
