# coordination_gateway/tools/conversation_tools.py
"""
Conversation Tools

Lifecycle and messaging operations exposed to the orchestration host:
starting a conversation, routing messages through it, inspecting it, and
managing the routing rules that react to its traffic.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import (
    CoordinationPattern,
    MessageType,
    Participant,
    RoutingRule,
    TimeoutSettings,
    Urgency,
)
from .base import Tool
from .registry import register_tool


class InitiateArgs(BaseModel):
    task_id: str = Field(..., description="Identifier of the task the agents coordinate on")
    initiator_id: str = Field(..., description="Agent starting the conversation")
    # Raw dicts so that bad entries are reported per item instead of failing the call
    participants: List[Dict[str, Any]] = Field(default_factory=list, description="Participants (agent_id, role, expertise, weight, authority, capabilities)")
    pattern: CoordinationPattern = Field(CoordinationPattern.COLLABORATIVE, description="Coordination pattern")
    timeouts: Optional[TimeoutSettings] = Field(None, description="Response/inactivity/total timeouts in seconds")
    initial_context: Dict[str, Any] = Field(default_factory=dict, description="Shared context to seed the conversation with")


@register_tool
class ConversationInitiateTool(Tool):
    name = "conversation_initiate"
    description = "Start a multi-agent conversation and connect its participants"
    args_model = InitiateArgs

    async def execute(self, args: InitiateArgs) -> Dict[str, Any]:
        result = await self.runtime.conversations.initiate(
            task_id=args.task_id,
            initiator_id=args.initiator_id,
            participants=args.participants,
            pattern=args.pattern,
            timeouts=args.timeouts,
            initial_context=args.initial_context,
        )
        payload = result.model_dump(mode="json")
        if result.invalid:
            payload["message"] = (
                f"{len(result.invalid)} invalid participants, "
                f"{len(result.connected) + len(result.offline)} valid, partial initiation"
            )
        return payload


class ConversationIdArgs(BaseModel):
    conversation_id: str = Field(..., description="Conversation identifier")


@register_tool
class ConversationStatusTool(Tool):
    name = "conversation_status"
    description = "Show the state, participants and metrics of a conversation"
    args_model = ConversationIdArgs

    async def execute(self, args: ConversationIdArgs) -> Dict[str, Any]:
        manager = self.runtime.conversations
        return {
            "status": manager.get_status(args.conversation_id),
            "metrics": manager.get_metrics(args.conversation_id),
        }


class CompleteArgs(BaseModel):
    conversation_id: str = Field(..., description="Conversation identifier")
    reason: str = Field("completed", description="Why the conversation ends")


@register_tool
class ConversationCompleteTool(Tool):
    name = "conversation_complete"
    description = "Complete a conversation and release its participant connections"
    args_model = CompleteArgs

    async def execute(self, args: CompleteArgs) -> Dict[str, Any]:
        conversation = await self.runtime.conversations.complete(args.conversation_id, args.reason)
        return {
            "conversation_id": conversation.conversation_id,
            "state": conversation.state.value,
            "completion_reason": conversation.completion_reason,
            "metrics": self.runtime.conversations.get_metrics(args.conversation_id),
        }


@register_tool
class ConversationResumeTool(Tool):
    name = "conversation_resume"
    description = "Resume a conversation paused by the inactivity timeout"
    args_model = ConversationIdArgs

    async def execute(self, args: ConversationIdArgs) -> Dict[str, Any]:
        conversation = await self.runtime.conversations.resume(args.conversation_id)
        return {"conversation_id": conversation.conversation_id, "state": conversation.state.value}


class RouteArgs(BaseModel):
    conversation_id: str = Field("", description="Conversation identifier")
    sender_id: str = Field("", description="Sending agent")
    recipients: List[str] = Field(default_factory=list, description="Explicit recipients; defaults to every other participant")
    message_type: Optional[MessageType] = Field(None, description="Message type")
    urgency: Urgency = Field(Urgency.MEDIUM, description="Message urgency")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Message body")
    requires_response: bool = Field(False, description="Whether a response is expected")
    in_reply_to: Optional[str] = Field(None, description="Message this one answers")


@register_tool
class MessageRouteTool(Tool):
    name = "message_route"
    description = "Route a message within a conversation and apply the routing rules"
    args_model = RouteArgs

    async def execute(self, args: RouteArgs) -> Dict[str, Any]:
        result = await self.runtime.router.route(args.model_dump())
        return result.model_dump(mode="json")


class RuleArgs(BaseModel):
    rule: RoutingRule = Field(..., description="Routing rule: name, condition, action, priority, enabled")


@register_tool
class RoutingRuleAddTool(Tool):
    name = "routing_rule_add"
    description = "Add or replace a routing rule (condition + route/broadcast/escalate/remind action)"
    args_model = RuleArgs

    async def execute(self, args: RuleArgs) -> Dict[str, Any]:
        rule = self.runtime.router.add_rule(args.rule)
        return {"rule": rule.model_dump(mode="json")}


class NoArgs(BaseModel):
    pass


@register_tool
class RoutingRulesListTool(Tool):
    name = "routing_rules_list"
    description = "List routing rules in evaluation order"
    args_model = NoArgs

    async def execute(self, args: NoArgs) -> Dict[str, Any]:
        rules = self.runtime.router.list_rules()
        return {"count": len(rules), "rules": [r.model_dump(mode="json") for r in rules]}
