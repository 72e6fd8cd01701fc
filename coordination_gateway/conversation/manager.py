# coordination_gateway/conversation/manager.py
"""
Conversation Manager

Owns the lifecycle of multi-agent conversations:

    initializing -> active -> completing -> completed
                      ^  |
                      |  v
                     paused   (inactivity timeout, resumed explicitly or by new traffic)

Each conversation has its own asyncio.Lock. Every state transition, and the
router's history/queue updates, happen while holding it, so operations on
one conversation are serialized while different conversations run
concurrently.

Completed conversations move to a bounded archive. Their lock, context store
and router queues are dropped at that point.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from ..context import ContextSynchronizer
from ..errors import (
    ConversationNotFoundError,
    ErrorHandler,
    InvalidTransitionError,
    ParticipantValidationError,
    ValidationFailure,
)
from ..infrastructure import ConnectionPool
from ..models import (
    TRANSITIONS,
    Conversation,
    ConversationState,
    CoordinationPattern,
    DecisionRecord,
    MessageType,
    Participant,
    ParticipantRole,
    ParticipantStatus,
    TimeoutSettings,
    new_id,
)
from ..monitoring import CoordinationMonitor
from ..settings import settings

# Message types that move the task forward; everything else is coordination overhead
PRODUCTIVE_TYPES = {
    MessageType.TASK_ASSIGNMENT,
    MessageType.STATUS_UPDATE,
    MessageType.RESPONSE,
    MessageType.COMPLETION,
}
REDUNDANCY_PENALTY = 0.8


class InitiationResult(BaseModel):
    conversation_id: str
    state: ConversationState
    connected: List[str] = Field(default_factory=list)
    offline: List[str] = Field(default_factory=list)
    invalid: List[Dict[str, Any]] = Field(default_factory=list)
    degraded: bool = False


class ConversationEvent(BaseModel):
    conversation_id: str
    event: str # conversation_timeout | conversation_expired | response_reminder
    state: ConversationState
    message_id: Optional[str] = None
    timestamp: float


class ConversationManager:
    def __init__(
        self,
        pool: ConnectionPool,
        context: ContextSynchronizer,
        monitor: Optional[CoordinationMonitor] = None,
        errors: Optional[ErrorHandler] = None,
        clock: Callable[[], float] = time.time,
        interval: Optional[float] = None,
    ):
        self.pool = pool
        self.context = context
        self.monitor = monitor
        self.errors = errors or ErrorHandler()
        self.clock = clock
        self.interval = interval or settings.MONITOR_INTERVAL

        self.archive_limit = settings.CONVERSATION_ARCHIVE_LIMIT

        self._conversations: Dict[str, Conversation] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Completed conversations, oldest first; read-only once archived
        self._archive: "OrderedDict[str, Conversation]" = OrderedDict()
        self._archive_listeners: List[Callable[[str], None]] = []
        self._events: List[ConversationEvent] = []
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id) or self._archive.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(
                f"Conversation {conversation_id} not found", conversation_id=conversation_id
            )
        return conversation

    def lock(self, conversation_id: str) -> asyncio.Lock:
        self.get(conversation_id)
        lock = self._locks.get(conversation_id)
        if lock is None:
            # Archived: nothing mutates it any more, callers only observe the completed state
            return asyncio.Lock()
        return lock

    def on_archive(self, listener: Callable[[str], None]) -> None:
        """Register a callback that receives the id of every archived conversation."""
        self._archive_listeners.append(listener)

    def list_active(self) -> List[Conversation]:
        return [c for c in self._conversations.values() if c.state != ConversationState.COMPLETED]

    def conversations_for_agent(self, agent_id: str) -> List[Conversation]:
        everything = list(self._conversations.values()) + list(self._archive.values())
        return [c for c in everything if c.participant(agent_id) is not None]

    @property
    def events(self) -> List[ConversationEvent]:
        return list(self._events)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def transition(self, conversation: Conversation, target: ConversationState) -> None:
        """Move a conversation to ``target``. Callers must hold its lock."""
        if target not in TRANSITIONS[conversation.state]:
            raise InvalidTransitionError(
                f"Cannot move conversation from {conversation.state.value} to {target.value}",
                conversation_id=conversation.conversation_id,
                current=conversation.state.value,
                target=target.value,
            )
        logger.info(f"🔁 {conversation.conversation_id}: {conversation.state.value} -> {target.value}")
        conversation.state = target
        conversation.state_log.append(target)

    def _validate_participants(
        self, participants: Iterable[Union[Participant, Dict[str, Any]]]
    ) -> Tuple[List[Participant], List[Dict[str, Any]]]:
        valid: List[Participant] = []
        invalid: List[Dict[str, Any]] = []
        seen = set()
        for index, item in enumerate(participants):
            try:
                participant = item if isinstance(item, Participant) else Participant.model_validate(item)
            except ValidationError as e:
                invalid.append({"index": index, "error": str(e.errors()[0]["msg"]), "input": item})
                continue
            if not participant.agent_id.strip():
                invalid.append({"index": index, "error": "agent_id must not be empty", "input": item})
                continue
            if participant.agent_id in seen:
                invalid.append({"index": index, "error": f"duplicate participant {participant.agent_id}", "input": item})
                continue
            seen.add(participant.agent_id)
            valid.append(participant.model_copy())
        return valid, invalid

    async def _connect(self, conversation: Conversation, participant: Participant) -> bool:
        async def connect():
            return await self.pool.acquire(participant.expertise, session_id=f"{conversation.conversation_id}:{participant.agent_id}")

        async def offline():
            return None

        connection = await self.errors.execute(f"connect {participant.agent_id}", connect, fallback=offline)
        if connection is None:
            participant.status = ParticipantStatus.OFFLINE
            participant.connection_id = None
            return False
        participant.status = ParticipantStatus.ACTIVE
        participant.connection_id = connection.connection_id
        return True

    async def initiate(
        self,
        task_id: str,
        initiator_id: str,
        participants: Iterable[Union[Participant, Dict[str, Any]]],
        pattern: CoordinationPattern = CoordinationPattern.COLLABORATIVE,
        timeouts: Optional[TimeoutSettings] = None,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> InitiationResult:
        """
        Create a conversation and connect its participants.

        Invalid participant entries are reported back without failing the
        whole call. If nobody can be connected, the conversation still starts
        as a degraded session where the initiator alone forms the quorum.
        """
        if not task_id or not initiator_id:
            raise ValidationFailure("task_id and initiator_id are required", task_id=task_id, initiator_id=initiator_id)

        valid, invalid = self._validate_participants(participants)
        if invalid:
            logger.warning(f"⚠️ {len(invalid)} invalid participants, {len(valid)} valid, continuing with partial set")
        if invalid and not valid:
            raise ParticipantValidationError("No valid participants supplied", invalid=invalid)
        if all(p.agent_id != initiator_id for p in valid):
            valid.insert(0, Participant(agent_id=initiator_id, role=ParticipantRole.PRIMARY))

        now = self.clock()
        conversation = Conversation(
            conversation_id=new_id("conv"),
            task_id=task_id,
            initiator_id=initiator_id,
            participants=valid,
            pattern=CoordinationPattern(pattern),
            timeouts=timeouts or TimeoutSettings(),
            created_at=now,
            last_activity=now,
        )
        conversation_id = conversation.conversation_id
        self._conversations[conversation_id] = conversation
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        if self.monitor:
            self.monitor.start(conversation_id, "conversation", len(valid))

        async with lock:
            results = await asyncio.gather(*(self._connect(conversation, p) for p in conversation.participants))
            connected = [p.agent_id for p, ok in zip(conversation.participants, results) if ok]
            offline = [p.agent_id for p, ok in zip(conversation.participants, results) if not ok]
            if not connected:
                conversation.degraded = True
                logger.warning(f"🆘 {conversation_id}: no participant reachable, starting degraded session")
            self.transition(conversation, ConversationState.ACTIVE)

        store = self.context.create(conversation_id, conversation.participant_ids)
        for key, value in (initial_context or {}).items():
            await store.update(key, value, initiator_id)
        conversation.shared_data = store.values()

        logger.info(f"🤝 Conversation {conversation_id} for task {task_id}: {len(connected)} connected, {len(offline)} offline")
        return InitiationResult(
            conversation_id=conversation_id,
            state=conversation.state,
            connected=connected,
            offline=offline,
            invalid=invalid,
            degraded=conversation.degraded,
        )

    async def resume(self, conversation_id: str) -> Conversation:
        async with self.lock(conversation_id):
            conversation = self.get(conversation_id)
            self.transition(conversation, ConversationState.ACTIVE)
            conversation.last_activity = self.clock()
            return conversation

    async def complete(self, conversation_id: str, reason: str = "completed") -> Conversation:
        async with self.lock(conversation_id):
            conversation = self.get(conversation_id)
            await self._complete(conversation, reason)
            return conversation

    async def _complete(self, conversation: Conversation, reason: str) -> None:
        self.transition(conversation, ConversationState.COMPLETED)
        conversation.completion_reason = reason
        for participant in conversation.participants:
            if participant.connection_id:
                await self.pool.release(participant.connection_id)
                participant.connection_id = None
            participant.status = ParticipantStatus.IDLE
        conversation.pending_responses.clear()
        if self.monitor:
            self.monitor.stop(conversation.conversation_id, "completed" if reason != "timeout" else "timeout")
        self._archive_conversation(conversation)

    def _archive_conversation(self, conversation: Conversation) -> None:
        conversation_id = conversation.conversation_id
        self._conversations.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)
        store = self.context.remove(conversation_id)
        if store is not None:
            conversation.shared_data = store.values()
            conversation.final_context = store.status()
        self._archive[conversation_id] = conversation
        while len(self._archive) > self.archive_limit:
            self._archive.popitem(last=False)
        for listener in self._archive_listeners:
            listener(conversation_id)
        logger.debug(f"🗄️ {conversation_id} archived")

    def record_decision(
        self,
        conversation_id: str,
        description: str,
        decided_by: str,
        value: Any = None,
        consensus: bool = False,
    ) -> DecisionRecord:
        conversation = self.get(conversation_id)
        record = DecisionRecord(
            description=description, decided_by=decided_by, value=value, consensus=consensus, timestamp=self.clock(),
        )
        conversation.decisions.append(record)
        return record

    async def eligible_voters(self, conversation_id: str) -> int:
        """
        Number of participants a quorum is measured against, read under the
        conversation lock. Observers do not vote; a degraded session is
        carried by its initiator alone.
        """
        async with self.lock(conversation_id):
            conversation = self.get(conversation_id)
            if conversation.degraded:
                return 1
            return sum(1 for p in conversation.participants if p.role != ParticipantRole.OBSERVER)

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    def _emit(self, conversation: Conversation, event: str, now: float, message_id: Optional[str] = None) -> ConversationEvent:
        record = ConversationEvent(
            conversation_id=conversation.conversation_id,
            event=event,
            state=conversation.state,
            message_id=message_id,
            timestamp=now,
        )
        self._events.append(record)
        del self._events[:-1000]
        return record

    async def check_timeouts(self, now: Optional[float] = None) -> List[ConversationEvent]:
        """Apply total, inactivity and response timeouts to every open conversation."""
        now = self.clock() if now is None else now
        emitted: List[ConversationEvent] = []
        for conversation in list(self._conversations.values()):
            lock = self._locks.get(conversation.conversation_id)
            if lock is None:
                continue
            async with lock:
                # Completion may have won the race for the lock
                if conversation.state == ConversationState.COMPLETED:
                    continue
                if now - conversation.created_at > conversation.timeouts.total:
                    await self._complete(conversation, "timeout")
                    emitted.append(self._emit(conversation, "conversation_expired", now))
                    logger.warning(f"⌛ {conversation.conversation_id} exceeded its total duration")
                    continue

                if (
                    conversation.state == ConversationState.ACTIVE
                    and now - conversation.last_activity > conversation.timeouts.inactivity
                ):
                    self.transition(conversation, ConversationState.PAUSED)
                    emitted.append(self._emit(conversation, "conversation_timeout", now))

                overdue = [mid for mid, deadline in conversation.pending_responses.items() if deadline <= now]
                for message_id in overdue:
                    # One reminder per message; the state is left alone
                    del conversation.pending_responses[message_id]
                    emitted.append(self._emit(conversation, "response_reminder", now, message_id))
                    logger.info(f"⏰ Response reminder for {message_id} in {conversation.conversation_id}")
        return emitted

    async def start(self):
        """Start the background timeout loop."""
        if self._running:
            return
        self._running = True
        logger.info("💓 Conversation monitor started")
        self._task = asyncio.create_task(self._monitor_loop())

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("💓 Conversation monitor stopped")

    async def _monitor_loop(self):
        while self._running:
            try:
                await self.check_timeouts()
            except Exception as e:
                logger.exception(f"❌ Timeout pass failed: {e}")
            try:
                await self.pool.evict_idle()
            except Exception as e:
                logger.exception(f"❌ Idle connection eviction failed: {e}")
            await asyncio.sleep(self.interval)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_status(self, conversation_id: str) -> Dict[str, Any]:
        conversation = self.get(conversation_id)
        now = self.clock()
        return {
            "conversation_id": conversation.conversation_id,
            "task_id": conversation.task_id,
            "initiator_id": conversation.initiator_id,
            "pattern": conversation.pattern.value,
            "state": conversation.state.value,
            "state_log": [s.value for s in conversation.state_log],
            "degraded": conversation.degraded,
            "completion_reason": conversation.completion_reason,
            "participants": [
                {"agent_id": p.agent_id, "role": p.role.value, "status": p.status.value, "weight": p.voting_weight()}
                for p in conversation.participants
            ],
            "message_count": len(conversation.history),
            "pending_responses": len(conversation.pending_responses),
            "decisions": len(conversation.decisions),
            "duration": now - conversation.created_at,
            "idle_for": now - conversation.last_activity,
            "context": conversation.final_context or self.context.get(conversation_id).status(),
        }

    def get_metrics(self, conversation_id: str) -> Dict[str, Any]:
        conversation = self.get(conversation_id)
        history = conversation.history
        by_id = {m.message_id: m for m in history}

        response_times = [
            m.timestamp - by_id[m.in_reply_to].timestamp
            for m in history
            if m.message_type == MessageType.RESPONSE and m.in_reply_to in by_id
        ]
        decisions = conversation.decisions
        productive = sum(1 for m in history if m.message_type in PRODUCTIVE_TYPES)
        efficiency = productive / len(history) if history else 0.0
        signatures = [(m.sender_id, m.message_type, repr(sorted(m.payload.items()))) for m in history]
        if len(set(signatures)) < len(signatures):
            efficiency *= REDUNDANCY_PENALTY

        return {
            "conversation_id": conversation_id,
            "message_count": len(history),
            "average_response_time": sum(response_times) / len(response_times) if response_times else 0.0,
            "consensus_rate": sum(1 for d in decisions if d.consensus) / len(decisions) if decisions else 0.0,
            "coordination_efficiency": round(efficiency, 6),
            "participants_connected": len(conversation.connected_participants),
        }

    def system_metrics(self) -> Dict[str, Any]:
        conversations = list(self._conversations.values()) + list(self._archive.values())
        by_state: Dict[str, int] = {}
        for conversation in conversations:
            by_state[conversation.state.value] = by_state.get(conversation.state.value, 0) + 1
        return {
            "total_conversations": len(conversations),
            "active_conversations": len(self.list_active()),
            "archived_conversations": len(self._archive),
            "degraded_conversations": sum(1 for c in conversations if c.degraded),
            "by_state": by_state,
            "average_participants": (
                sum(len(c.participants) for c in conversations) / len(conversations) if conversations else 0.0
            ),
            "errors": self.errors.stats(),
            "pool": self.pool.statistics(),
        }
