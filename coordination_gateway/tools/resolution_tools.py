# coordination_gateway/tools/resolution_tools.py
"""
Resolution Tools

Conflict resolution, quorum checks and the system-wide coordination metrics.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..errors import ResolutionTimeoutError
from ..resolution import ResolutionRequest, check_quorum
from .base import Tool
from .registry import register_tool


class ResolveArgs(ResolutionRequest):
    description: str = Field("", description="Decision being made, recorded on the conversation")
    decided_by: str = Field("coordination-gateway", description="Who records the decision")


@register_tool
class ConflictResolveTool(Tool):
    name = "conflict_resolve"
    description = (
        "Resolve a conflict with a strategy: majority-vote, weighted-vote, expert-authority, "
        "consensus-building, collaborative-negotiation, evidence-based-resolution, "
        "automated-compromise or escalation-hierarchy"
    )
    args_model = ResolveArgs

    async def execute(self, args: ResolveArgs) -> Dict[str, Any]:
        request = ResolutionRequest.model_validate(args.model_dump(exclude={"description", "decided_by"}))
        runtime = self.runtime
        if request.conversation_id:
            # Also fails fast on an unknown conversation
            eligible = await runtime.conversations.eligible_voters(request.conversation_id)
            if request.eligible_participants is None:
                request.eligible_participants = eligible
        decision = await runtime.resolver.resolve(request)
        if decision.timed_out and not decision.resolved:
            raise ResolutionTimeoutError(
                f"{request.strategy.value} ran out of time with no option to fall back on",
                conversation_id=request.conversation_id,
            )
        result: Dict[str, Any] = {"decision": decision.model_dump(mode="json")}
        if request.conversation_id and decision.resolved:
            record = runtime.conversations.record_decision(
                request.conversation_id,
                args.description or f"{request.strategy.value} decision",
                args.decided_by,
                value=decision.value,
                consensus=request.strategy.value in ("consensus-building", "collaborative-negotiation"),
            )
            result["decision_id"] = record.decision_id
        return result


class QuorumArgs(BaseModel):
    total_participants: int = Field(..., gt=0, description="Eligible participants")
    actual_participants: int = Field(..., ge=0, description="Participants who voted")
    requirement: float = Field(..., ge=0.0, le=1.0, description="Required participation fraction")


@register_tool
class QuorumCheckTool(Tool):
    name = "quorum_check"
    description = "Check whether participation meets the quorum requirement"
    args_model = QuorumArgs

    async def execute(self, args: QuorumArgs) -> Dict[str, Any]:
        result = check_quorum(args.total_participants, args.actual_participants, args.requirement)
        return result.model_dump(mode="json")


class MetricsArgs(BaseModel):
    conversation_id: Optional[str] = Field(None, description="Limit to one conversation")


@register_tool
class CoordinationMetricsTool(Tool):
    name = "coordination_metrics"
    description = "Report coordination metrics for one conversation or the whole gateway"
    args_model = MetricsArgs

    async def execute(self, args: MetricsArgs) -> Dict[str, Any]:
        runtime = self.runtime
        if args.conversation_id:
            return {"metrics": runtime.conversations.get_metrics(args.conversation_id)}
        return {"metrics": runtime.system_metrics(), "alerts": runtime.monitor.health_report()["active_alerts"]}
