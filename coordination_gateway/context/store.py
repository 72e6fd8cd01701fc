# coordination_gateway/context/store.py
"""
Context Synchronization / Version Store

Each conversation owns a ContextStore: a versioned key/value map with
optimistic concurrency, an append-only snapshot chain for point-in-time
recovery, and per-participant replicas whose convergence is checked by
comparing per-key checksums.

All mutations go through the store's asyncio.Lock, so a conversation has a
single writer at a time while different conversations proceed concurrently.

Once participants are registered, only they may write, snapshot, roll back
or settle conflicts. Per-key versions never go backwards, not even across a
rollback.
"""

import asyncio
import copy
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..errors import (
    ContextConflictError,
    ConversationNotFoundError,
    IntegrityError,
    ValidationFailure,
    VersionNotFoundError,
)
from ..models import Severity, new_id
from ..settings import settings
from .checksum import compute_checksum


class MergeStrategy(str, Enum):
    REPLACE = "replace"
    MERGE = "merge"
    APPEND = "append"


class ConflictType(str, Enum):
    CONCURRENT_MODIFICATION = "concurrent-modification"
    VERSION_MISMATCH = "version-mismatch"
    DATA_CORRUPTION = "data-corruption"
    DEADLOCK = "deadlock"


class ConflictHandling(str, Enum):
    AUTO_MERGE = "auto-merge"
    MANUAL_RESOLVE = "manual-resolve"
    LAST_WRITE_WINS = "last-write-wins"


class ContextEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    value: Any
    version: int
    last_modified_by: str
    checksum: str
    timestamp: float


class ContextConflict(BaseModel):
    conflict_id: str = Field(default_factory=lambda: new_id("conflict"))
    conversation_id: str
    key: str
    conflict_type: ConflictType
    severity: Severity
    entries: List[ContextEntry] = Field(default_factory=list)
    strategy: ConflictHandling
    resolved: bool = False
    resolution: Optional[str] = None
    detected_at: float = Field(default_factory=time.time)


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    version_id: str
    conversation_id: str
    sequence: int
    description: str
    created_by: str
    entries: Dict[str, ContextEntry]
    checksum: str
    store_version: int
    created_at: float


class ContextOperation(BaseModel):
    operation_id: str = Field(default_factory=lambda: new_id("op"))
    operation_type: str # update | merge | append | resolve | rollback
    key: Optional[str] = None
    agent_id: str
    version: int
    applied: bool = True
    timestamp: float = Field(default_factory=time.time)


class UpdateResult(BaseModel):
    applied: bool
    key: str
    entry: Optional[ContextEntry] = None
    conflict: Optional[ContextConflict] = None
    store_version: int


class IntegrityReport(BaseModel):
    checksum_match: bool
    corruption_detected: bool
    severity: Optional[Severity] = None
    corrupted_keys: List[str] = Field(default_factory=list)
    conflict_id: Optional[str] = None


class RollbackResult(BaseModel):
    version_id: str
    restored_entries: int
    checksum: str
    operation_id: str
    cleared_operations: int


class ConvergenceReport(BaseModel):
    converged: bool
    replicas: int
    divergent_keys: Dict[str, List[str]] = Field(default_factory=dict)
    elapsed: float = 0.0


def merge_values(current: Any, incoming: Any, strategy: MergeStrategy) -> Any:
    """Combine an existing value with an incoming one."""
    if strategy == MergeStrategy.REPLACE or current is None:
        return incoming
    if strategy == MergeStrategy.MERGE:
        if not isinstance(current, dict) or not isinstance(incoming, dict):
            raise ValidationFailure("merge requires object values", strategy=strategy.value)
        return {**current, **incoming}
    if strategy == MergeStrategy.APPEND:
        if not isinstance(current, list):
            raise ValidationFailure("append requires an array value", strategy=strategy.value)
        extra = incoming if isinstance(incoming, list) else [incoming]
        return current + extra
    raise ValidationFailure(f"Unknown merge strategy: {strategy}")


def classify_difference(current: Any, incoming: Any, strategy: MergeStrategy) -> Optional[Severity]:
    """
    Severity of a concurrent write, by how materially the values differ.

    None means there is nothing to reconcile. LOW differences are compatible
    and can be merged without losing either write.
    """
    if strategy == MergeStrategy.APPEND:
        return Severity.LOW
    if current == incoming:
        return None
    if isinstance(current, dict) and isinstance(incoming, dict):
        overlap = [k for k in current.keys() & incoming.keys() if current[k] != incoming[k]]
        if not overlap:
            return Severity.LOW
        union = current.keys() | incoming.keys()
        return Severity.MEDIUM if len(overlap) * 2 <= len(union) else Severity.HIGH
    if isinstance(current, list) and isinstance(incoming, list):
        shorter, longer = sorted((current, incoming), key=len)
        if longer[:len(shorter)] == shorter:
            return Severity.LOW
        return Severity.MEDIUM
    if isinstance(current, (int, float)) and isinstance(incoming, (int, float)) \
            and not isinstance(current, bool) and not isinstance(incoming, bool):
        scale = max(abs(current), abs(incoming)) or 1.0
        return Severity.MEDIUM if abs(current - incoming) / scale <= 0.1 else Severity.HIGH
    return Severity.HIGH


def auto_merge(current: Any, incoming: Any, strategy: MergeStrategy) -> Any:
    if strategy == MergeStrategy.APPEND:
        return merge_values(current, incoming, strategy)
    if isinstance(current, dict) and isinstance(incoming, dict):
        return {**current, **incoming}
    if isinstance(current, list) and isinstance(incoming, list):
        return incoming if len(incoming) >= len(current) else current
    return incoming


def state_checksum(entries: Dict[str, ContextEntry]) -> str:
    return compute_checksum({key: entry.checksum for key, entry in entries.items()})


class ContextStore:
    """Versioned shared context of one conversation."""

    def __init__(
        self,
        conversation_id: str,
        concurrency_window: Optional[float] = None,
        snapshot_retention: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.conversation_id = conversation_id
        self.concurrency_window = settings.CONCURRENCY_WINDOW if concurrency_window is None else concurrency_window
        self.snapshot_retention = snapshot_retention or settings.SNAPSHOT_RETENTION
        self.clock = clock
        self.version = 0

        self._entries: Dict[str, ContextEntry] = {}
        self._key_versions: Dict[str, int] = {} # highest version ever issued per key, survives rollback
        self._snapshots: List[Snapshot] = []
        self._sequence = 0
        self._operations: List[ContextOperation] = []
        self._pending: Dict[str, ContextOperation] = {} # conflict_id -> held operation
        self._conflicts: Dict[str, ContextConflict] = {}
        self._replicas: Dict[str, Dict[str, ContextEntry]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[ContextEntry]:
        return self._entries.get(key)

    def values(self) -> Dict[str, Any]:
        return {key: entry.value for key, entry in self._entries.items()}

    @property
    def entries(self) -> Dict[str, ContextEntry]:
        return dict(self._entries)

    @property
    def snapshots(self) -> List[Snapshot]:
        return list(self._snapshots)

    @property
    def operations(self) -> List[ContextOperation]:
        return list(self._operations)

    @property
    def pending_operations(self) -> List[ContextOperation]:
        return list(self._pending.values())

    def conflicts(self, include_resolved: bool = False) -> List[ContextConflict]:
        return [c for c in self._conflicts.values() if include_resolved or not c.resolved]

    def checksum(self) -> str:
        return state_checksum(self._entries)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def update(
        self,
        key: str,
        value: Any,
        writer: str,
        merge: MergeStrategy = MergeStrategy.REPLACE,
        expected_version: Optional[int] = None,
    ) -> UpdateResult:
        if not key:
            raise ValidationFailure("Context key must not be empty")
        if not writer:
            raise ValidationFailure("Writer id must not be empty", key=key)
        self._check_participant(writer, key=key)
        merge = MergeStrategy(merge)
        value = copy.deepcopy(value)

        async with self._lock:
            now = self.clock()
            current = self._entries.get(key)

            if current is None:
                if expected_version:
                    return self._hold(key, value, writer, merge, None, ConflictType.VERSION_MISMATCH, Severity.MEDIUM, now)
                entry = self._write(key, merge_values(None, value, merge), writer, now, merge.value)
                return UpdateResult(applied=True, key=key, entry=entry, store_version=self.version)

            stale = expected_version is not None and expected_version != current.version
            # A writer that names the current version has seen the latest write
            racing = (
                expected_version is None
                and current.last_modified_by != writer
                and now - current.timestamp <= self.concurrency_window
            )

            if not (stale or racing):
                entry = self._write(key, merge_values(current.value, value, merge), writer, now, merge.value)
                return UpdateResult(applied=True, key=key, entry=entry, store_version=self.version)

            severity = classify_difference(current.value, value, merge)
            if severity is None:
                # Same value from both writers; nothing to apply
                return UpdateResult(applied=False, key=key, entry=current, store_version=self.version)

            conflict_type = ConflictType.VERSION_MISMATCH if stale and not racing else ConflictType.CONCURRENT_MODIFICATION
            if severity == Severity.LOW:
                merged = auto_merge(current.value, value, merge)
                proposed = self._proposed(key, value, writer, now)
                entry = self._write(key, merged, writer, now, "merge")
                conflict = ContextConflict(
                    conversation_id=self.conversation_id,
                    key=key,
                    conflict_type=conflict_type,
                    severity=severity,
                    entries=[current, proposed],
                    strategy=ConflictHandling.AUTO_MERGE,
                    resolved=True,
                    resolution="auto-merged",
                    detected_at=now,
                )
                self._conflicts[conflict.conflict_id] = conflict
                logger.info(f"🔀 Auto-merged concurrent write to '{key}' in {self.conversation_id}")
                return UpdateResult(applied=True, key=key, entry=entry, conflict=conflict, store_version=self.version)

            return self._hold(key, value, writer, merge, current, conflict_type, severity, now)

    def _hold(self, key, value, writer, merge, current, conflict_type, severity, now) -> UpdateResult:
        proposed = self._proposed(key, merge_values(current.value if current else None, value, merge), writer, now)
        conflict = ContextConflict(
            conversation_id=self.conversation_id,
            key=key,
            conflict_type=conflict_type,
            severity=severity,
            entries=[e for e in (current, proposed) if e is not None],
            strategy=ConflictHandling.MANUAL_RESOLVE,
            detected_at=now,
        )
        self._conflicts[conflict.conflict_id] = conflict
        operation = ContextOperation(
            operation_type=merge.value, key=key, agent_id=writer,
            version=self.version, applied=False, timestamp=now,
        )
        self._pending[conflict.conflict_id] = operation
        self._operations.append(operation)
        logger.warning(
            f"⚠️ {conflict_type.value} on '{key}' in {self.conversation_id} "
            f"({severity.value}), held for resolution as {conflict.conflict_id}"
        )
        return UpdateResult(applied=False, key=key, entry=current, conflict=conflict, store_version=self.version)

    def _check_participant(self, agent_id: str, **context: Any) -> None:
        if self._replicas and agent_id not in self._replicas:
            raise ValidationFailure(
                f"{agent_id} is not a participant of {self.conversation_id}",
                conversation_id=self.conversation_id,
                agent_id=agent_id,
                **context,
            )

    def _next_version(self, key: str) -> int:
        return self._key_versions.get(key, 0) + 1

    def _proposed(self, key: str, value: Any, writer: str, now: float) -> ContextEntry:
        return ContextEntry(
            key=key,
            value=value,
            version=self._next_version(key),
            last_modified_by=writer,
            checksum=compute_checksum(value),
            timestamp=now,
        )

    def _write(self, key: str, value: Any, writer: str, now: float, operation_type: str) -> ContextEntry:
        entry = ContextEntry(
            key=key,
            value=value,
            version=self._next_version(key),
            last_modified_by=writer,
            checksum=compute_checksum(value),
            timestamp=now,
        )
        self._entries[key] = entry
        self._key_versions[key] = entry.version
        self.version += 1
        self._operations.append(ContextOperation(
            operation_type=operation_type, key=key, agent_id=writer, version=self.version, timestamp=now,
        ))
        return entry

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolver: str,
        choice: Optional[int] = None,
        value: Any = None,
    ) -> ContextEntry:
        """
        Settle a held conflict either by picking one of its recorded entries
        (``choice``) or by supplying a replacement ``value``.
        """
        self._check_participant(resolver, conflict_id=conflict_id)
        async with self._lock:
            conflict = self._conflicts.get(conflict_id)
            if conflict is None:
                raise ValidationFailure(f"Unknown conflict: {conflict_id}", conflict_id=conflict_id)
            if conflict.resolved:
                raise ContextConflictError(f"Conflict already resolved: {conflict_id}", conflict_id=conflict_id)
            if choice is None and value is None:
                raise ValidationFailure("Provide either a choice or a value", conflict_id=conflict_id)
            if choice is not None:
                if not 0 <= choice < len(conflict.entries):
                    raise ValidationFailure(f"Choice {choice} out of range", conflict_id=conflict_id)
                value = conflict.entries[choice].value

            entry = self._write(conflict.key, copy.deepcopy(value), resolver, self.clock(), "resolve")
            conflict.resolved = True
            conflict.resolution = f"resolved by {resolver}"
            self._pending.pop(conflict_id, None)
            logger.info(f"✅ Conflict {conflict_id} on '{conflict.key}' resolved by {resolver}")
            return entry

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify(self, key: Optional[str] = None, declared_checksum: Optional[str] = None) -> IntegrityReport:
        """
        Recompute checksums and compare them with the recorded (or declared) ones.

        Any mismatch is critical and is recorded as a data-corruption conflict
        that only a manual resolution can clear.
        """
        if key is not None:
            entry = self._entries.get(key)
            if entry is None:
                raise ValidationFailure(f"Unknown context key: {key}", key=key)
            targets = [entry]
        else:
            targets = list(self._entries.values())

        corrupted = []
        for entry in targets:
            expected = declared_checksum if key is not None and declared_checksum else entry.checksum
            if compute_checksum(entry.value) != expected:
                corrupted.append(entry)

        if not corrupted:
            return IntegrityReport(checksum_match=True, corruption_detected=False)

        conflict_id = None
        for entry in corrupted:
            conflict = ContextConflict(
                conversation_id=self.conversation_id,
                key=entry.key,
                conflict_type=ConflictType.DATA_CORRUPTION,
                severity=Severity.CRITICAL,
                entries=[entry],
                strategy=ConflictHandling.MANUAL_RESOLVE,
                detected_at=self.clock(),
            )
            self._conflicts[conflict.conflict_id] = conflict
            conflict_id = conflict_id or conflict.conflict_id
            logger.critical(f"🚨 Checksum mismatch on '{entry.key}' in {self.conversation_id}")

        return IntegrityReport(
            checksum_match=False,
            corruption_detected=True,
            severity=Severity.CRITICAL,
            corrupted_keys=[e.key for e in corrupted],
            conflict_id=conflict_id,
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def snapshot(self, description: str, creator: str) -> Snapshot:
        self._check_participant(creator)
        async with self._lock:
            self._sequence += 1
            entries = copy.deepcopy(self._entries)
            snap = Snapshot(
                version_id=new_id("snapshot"),
                conversation_id=self.conversation_id,
                sequence=self._sequence,
                description=description,
                created_by=creator,
                entries=entries,
                checksum=state_checksum(entries),
                store_version=self.version,
                created_at=self.clock(),
            )
            self._snapshots.append(snap)
            if len(self._snapshots) > self.snapshot_retention:
                del self._snapshots[:-self.snapshot_retention]
            logger.debug(f"📸 Snapshot {snap.version_id} of {self.conversation_id} ({len(entries)} entries)")
            return snap

    def find_snapshot(self, version_id: str) -> Snapshot:
        for snap in self._snapshots:
            if snap.version_id == version_id:
                return snap
        raise VersionNotFoundError(f"Snapshot {version_id} not found", conversation_id=self.conversation_id)

    async def rollback(self, version_id: str, agent_id: str) -> RollbackResult:
        self._check_participant(agent_id, version_id=version_id)
        async with self._lock:
            snap = self.find_snapshot(version_id)
            for entry in snap.entries.values():
                if compute_checksum(entry.value) != entry.checksum:
                    raise IntegrityError(
                        f"Snapshot {version_id} entry '{entry.key}' failed checksum verification",
                        version_id=version_id,
                    )
            if state_checksum(snap.entries) != snap.checksum:
                raise IntegrityError(f"Snapshot {version_id} checksum mismatch", version_id=version_id)

            now = self.clock()
            restored: Dict[str, ContextEntry] = {}
            for key, entry in snap.entries.items():
                # Versions keep increasing per key; only the values go back
                version = self._next_version(key)
                self._key_versions[key] = version
                restored[key] = entry.model_copy(update={
                    "value": copy.deepcopy(entry.value),
                    "version": version,
                    "last_modified_by": agent_id,
                    "timestamp": now,
                })
            self._entries = restored
            self.version += 1

            cleared = 0
            for conflict in self._conflicts.values():
                if conflict.resolved:
                    continue
                # Critical conflicts on keys the snapshot does not restore stay open for manual resolution
                if conflict.key not in restored and conflict.severity == Severity.CRITICAL:
                    continue
                conflict.resolved = True
                conflict.resolution = f"superseded by rollback to {version_id}"
                if self._pending.pop(conflict.conflict_id, None) is not None:
                    cleared += 1

            operation = ContextOperation(operation_type="rollback", agent_id=agent_id, version=self.version, timestamp=now)
            self._operations.append(operation)
            logger.info(f"⏪ {self.conversation_id} rolled back to {version_id} by {agent_id}")
            return RollbackResult(
                version_id=version_id,
                restored_entries=len(restored),
                checksum=state_checksum(restored),
                operation_id=operation.operation_id,
                cleared_operations=cleared,
            )

    # ------------------------------------------------------------------
    # Replicas
    # ------------------------------------------------------------------

    def register_replica(self, agent_id: str) -> None:
        self._replicas.setdefault(agent_id, {})

    async def sync(self, targets: Optional[Iterable[str]] = None) -> List[str]:
        """Push the authoritative entries to participant replicas."""
        async with self._lock:
            names = list(targets) if targets is not None else list(self._replicas)
            for name in names:
                self._replicas[name] = copy.deepcopy(self._entries)
            return names

    def verify_convergence(self) -> ConvergenceReport:
        divergent: Dict[str, List[str]] = {}
        reference = {key: entry.checksum for key, entry in self._entries.items()}
        for agent_id, replica in self._replicas.items():
            seen = {key: compute_checksum(entry.value) for key, entry in replica.items()}
            for key in reference.keys() | seen.keys():
                if reference.get(key) != seen.get(key):
                    divergent.setdefault(key, []).append(agent_id)
        return ConvergenceReport(converged=not divergent, replicas=len(self._replicas), divergent_keys=divergent)

    async def await_convergence(self, timeout: Optional[float] = None, interval: float = 0.05) -> ConvergenceReport:
        timeout = settings.CONVERGENCE_TIMEOUT if timeout is None else timeout
        started = time.monotonic()

        async def _converge() -> ConvergenceReport:
            while True:
                await self.sync()
                report = self.verify_convergence()
                if report.converged:
                    return report
                await asyncio.sleep(interval)

        try:
            report = await asyncio.wait_for(_converge(), timeout)
        except asyncio.TimeoutError:
            report = self.verify_convergence()
        report.elapsed = time.monotonic() - started
        return report

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        active = self.conflicts()
        health = max(0.0, 1.0 - 0.1 * len(self._pending) - 0.2 * len(active))
        return {
            "conversation_id": self.conversation_id,
            "version": self.version,
            "entries": len(self._entries),
            "checksum": self.checksum(),
            "snapshots": len(self._snapshots),
            "pending_operations": len(self._pending),
            "active_conflicts": len(active),
            "replicas": len(self._replicas),
            "health_score": round(health, 3),
        }


class ContextSynchronizer:
    """Owns one ContextStore per conversation."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._stores: Dict[str, ContextStore] = {}

    def create(self, conversation_id: str, participants: Iterable[str] = ()) -> ContextStore:
        store = self._stores.get(conversation_id)
        if store is None:
            store = ContextStore(conversation_id, clock=self.clock)
            self._stores[conversation_id] = store
        for agent_id in participants:
            store.register_replica(agent_id)
        return store

    def get(self, conversation_id: str) -> ContextStore:
        store = self._stores.get(conversation_id)
        if store is None:
            raise ConversationNotFoundError(f"No context for conversation {conversation_id}", conversation_id=conversation_id)
        return store

    def remove(self, conversation_id: str) -> Optional[ContextStore]:
        return self._stores.pop(conversation_id, None)

    def system_status(self) -> Dict[str, Any]:
        statuses = [store.status() for store in self._stores.values()]
        return {
            "stores": len(statuses),
            "pending_operations": sum(s["pending_operations"] for s in statuses),
            "active_conflicts": sum(s["active_conflicts"] for s in statuses),
        }
