# coordination_gateway/tools/context_tools.py
"""
Context Tools

Shared-context operations: versioned updates with conflict detection,
integrity checks, snapshots and rollback.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..context import MergeStrategy
from ..errors import ValidationFailure
from .base import Tool
from .registry import register_tool


class UpdateArgs(BaseModel):
    conversation_id: str = Field(..., description="Conversation identifier")
    key: str = Field(..., description="Context key")
    value: Any = Field(..., description="New value (or value to merge/append)")
    agent_id: str = Field(..., description="Writing agent")
    merge_strategy: MergeStrategy = Field(MergeStrategy.REPLACE, description="replace, merge (object union) or append (array concat)")
    expected_version: Optional[int] = Field(None, description="Version the writer last saw; a mismatch is a conflict")


@register_tool
class ContextUpdateTool(Tool):
    name = "context_update"
    description = "Update a shared context key with version and conflict tracking"
    args_model = UpdateArgs

    async def execute(self, args: UpdateArgs) -> Dict[str, Any]:
        store = self.runtime.context.get(args.conversation_id)
        result = await store.update(
            args.key, args.value, args.agent_id,
            merge=args.merge_strategy, expected_version=args.expected_version,
        )
        return result.model_dump(mode="json")


class GetArgs(BaseModel):
    conversation_id: str = Field(..., description="Conversation identifier")
    key: Optional[str] = Field(None, description="Single key to read; omit for the whole context")


@register_tool
class ContextGetTool(Tool):
    name = "context_get"
    description = "Read shared context entries with their versions and checksums"
    args_model = GetArgs

    async def execute(self, args: GetArgs) -> Dict[str, Any]:
        store = self.runtime.context.get(args.conversation_id)
        if args.key is not None:
            entry = store.get(args.key)
            if entry is None:
                raise ValidationFailure(f"Unknown context key: {args.key}", key=args.key)
            return {"entry": entry.model_dump(mode="json")}
        return {
            "entries": {k: e.model_dump(mode="json") for k, e in store.entries.items()},
            "status": store.status(),
            "conflicts": [c.model_dump(mode="json") for c in store.conflicts()],
        }


class SnapshotArgs(BaseModel):
    conversation_id: str = Field(..., description="Conversation identifier")
    description: str = Field("", description="What this snapshot captures")
    created_by: str = Field(..., description="Agent taking the snapshot")


@register_tool
class ContextSnapshotTool(Tool):
    name = "context_snapshot"
    description = "Capture the shared context as an immutable snapshot"
    args_model = SnapshotArgs

    async def execute(self, args: SnapshotArgs) -> Dict[str, Any]:
        store = self.runtime.context.get(args.conversation_id)
        snap = await store.snapshot(args.description, args.created_by)
        return {
            "version_id": snap.version_id,
            "sequence": snap.sequence,
            "entries": len(snap.entries),
            "checksum": snap.checksum,
        }


class RollbackArgs(BaseModel):
    conversation_id: str = Field(..., description="Conversation identifier")
    version_id: str = Field(..., description="Snapshot to restore")
    agent_id: str = Field(..., description="Agent requesting the rollback")


@register_tool
class ContextRollbackTool(Tool):
    name = "context_rollback"
    description = "Restore the shared context to a snapshot after verifying its checksum"
    args_model = RollbackArgs

    async def execute(self, args: RollbackArgs) -> Dict[str, Any]:
        store = self.runtime.context.get(args.conversation_id)
        result = await store.rollback(args.version_id, args.agent_id)
        return result.model_dump(mode="json")


class VerifyArgs(BaseModel):
    conversation_id: str = Field(..., description="Conversation identifier")
    key: Optional[str] = Field(None, description="Key to verify; omit to verify every entry")
    declared_checksum: Optional[str] = Field(None, description="Checksum the caller expects for the key")
    check_convergence: bool = Field(False, description="Also sync and compare participant replicas")


@register_tool
class ContextVerifyTool(Tool):
    name = "context_verify"
    description = "Verify context checksums and replica convergence"
    args_model = VerifyArgs

    async def execute(self, args: VerifyArgs) -> Dict[str, Any]:
        store = self.runtime.context.get(args.conversation_id)
        result = {"integrity": store.verify(args.key, args.declared_checksum).model_dump(mode="json")}
        if args.check_convergence:
            report = await store.await_convergence()
            result["convergence"] = report.model_dump(mode="json")
        return result


class ResolveContextConflictArgs(BaseModel):
    conversation_id: str = Field(..., description="Conversation identifier")
    conflict_id: str = Field(..., description="Held conflict to settle")
    resolver: str = Field(..., description="Agent resolving the conflict")
    choice: Optional[int] = Field(None, description="Index of the recorded entry to keep")
    value: Any = Field(None, description="Replacement value when no recorded entry is right")


@register_tool
class ContextConflictResolveTool(Tool):
    name = "context_conflict_resolve"
    description = "Settle a held context conflict by choosing an entry or supplying a value"
    args_model = ResolveContextConflictArgs

    async def execute(self, args: ResolveContextConflictArgs) -> Dict[str, Any]:
        store = self.runtime.context.get(args.conversation_id)
        entry = await store.resolve_conflict(args.conflict_id, args.resolver, choice=args.choice, value=args.value)
        return {"entry": entry.model_dump(mode="json")}
