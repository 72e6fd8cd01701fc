# coordination_gateway/models.py
"""
Conversation Data Model

Pydantic models shared by the conversation manager, the message router and
the tool layer. Enumerations are closed: every message type, rule action and
state the router can see is listed here, so the dispatcher that interprets
them can be exhaustive.
"""

import time
import uuid
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .settings import settings


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class ParticipantRole(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    OBSERVER = "observer"
    MEDIATOR = "mediator"


class ParticipantStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"


class CoordinationPattern(str, Enum):
    ROUND_ROBIN = "round-robin"
    HIERARCHICAL = "hierarchical"
    COLLABORATIVE = "collaborative"
    CONSENSUS_DRIVEN = "consensus-driven"
    LEADER_FOLLOWER = "leader-follower"


class ConversationState(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETING = "completing"
    COMPLETED = "completed"


class MessageType(str, Enum):
    TASK_ASSIGNMENT = "task-assignment"
    STATUS_UPDATE = "status-update"
    QUESTION = "question"
    RESPONSE = "response"
    COORDINATION = "coordination"
    COMPLETION = "completion"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Allowed state transitions. PAUSED <-> ACTIVE is the only cycle.
TRANSITIONS: Dict[ConversationState, Tuple[ConversationState, ...]] = {
    ConversationState.INITIALIZING: (ConversationState.ACTIVE,),
    ConversationState.ACTIVE: (
        ConversationState.PAUSED,
        ConversationState.COMPLETING,
        ConversationState.COMPLETED,
    ),
    ConversationState.PAUSED: (ConversationState.ACTIVE, ConversationState.COMPLETED),
    ConversationState.COMPLETING: (ConversationState.COMPLETED,),
    ConversationState.COMPLETED: (),
}

ROLE_WEIGHTS = {
    ParticipantRole.PRIMARY: 1.5,
    ParticipantRole.SECONDARY: 1.2,
    ParticipantRole.MEDIATOR: 1.3,
    ParticipantRole.OBSERVER: 0.8,
}


class Participant(BaseModel):
    agent_id: str
    expertise: str = "general"
    role: ParticipantRole = ParticipantRole.SECONDARY
    weight: float = Field(default=1.0, ge=0.0)
    authority: float = Field(default=1.0, ge=0.0)
    capabilities: List[str] = Field(default_factory=list)
    status: ParticipantStatus = ParticipantStatus.IDLE
    connection_id: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.status != ParticipantStatus.OFFLINE and self.connection_id is not None

    def voting_weight(self) -> float:
        """Role-based weight with a small bonus per declared capability, capped at 2.0."""
        base = ROLE_WEIGHTS.get(self.role, 1.0) * self.weight
        return min(2.0, base + 0.1 * len(self.capabilities))


class TimeoutSettings(BaseModel):
    response: float = Field(default_factory=lambda: settings.RESPONSE_TIMEOUT, gt=0)
    inactivity: float = Field(default_factory=lambda: settings.INACTIVITY_TIMEOUT, gt=0)
    total: float = Field(default_factory=lambda: settings.TOTAL_CONVERSATION_TIMEOUT, gt=0)


class MessageDraft(BaseModel):
    """
    A message as submitted by a caller, before validation and routing.

    Fields default to empty values so that missing data is reported by the
    router as a validation error instead of failing at construction time.
    """
    conversation_id: str = ""
    sender_id: str = ""
    recipients: List[str] = Field(default_factory=list)
    message_type: Optional[MessageType] = None
    urgency: Urgency = Urgency.MEDIUM
    payload: Dict[str, Any] = Field(default_factory=dict)
    requires_response: bool = False
    response_deadline: Optional[float] = None
    in_reply_to: Optional[str] = None


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str
    conversation_id: str
    sender_id: str
    recipients: Tuple[str, ...]
    message_type: MessageType
    urgency: Urgency
    payload: Dict[str, Any] = Field(default_factory=dict)
    requires_response: bool = False
    response_deadline: Optional[float] = None
    in_reply_to: Optional[str] = None
    timestamp: float


class DecisionRecord(BaseModel):
    decision_id: str = Field(default_factory=lambda: new_id("decision"))
    description: str
    decided_by: str
    value: Any = None
    consensus: bool = False
    timestamp: float = Field(default_factory=time.time)


class Conversation(BaseModel):
    conversation_id: str
    task_id: str
    initiator_id: str
    participants: List[Participant]
    pattern: CoordinationPattern = CoordinationPattern.COLLABORATIVE
    state: ConversationState = ConversationState.INITIALIZING
    state_log: List[ConversationState] = Field(default_factory=lambda: [ConversationState.INITIALIZING])
    shared_data: Dict[str, Any] = Field(default_factory=dict)
    decisions: List[DecisionRecord] = Field(default_factory=list)
    history: List[Message] = Field(default_factory=list)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    created_at: float = Field(default_factory=time.time)
    last_activity: float = Field(default_factory=time.time)
    degraded: bool = False
    completion_reason: Optional[str] = None
    final_context: Optional[Dict[str, Any]] = None # context status captured when the conversation is archived
    # message_id -> absolute deadline for messages awaiting a response
    pending_responses: Dict[str, float] = Field(default_factory=dict)

    def participant(self, agent_id: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.agent_id == agent_id:
                return participant
        return None

    @property
    def connected_participants(self) -> List[Participant]:
        return [p for p in self.participants if p.connected]

    @property
    def participant_ids(self) -> List[str]:
        return [p.agent_id for p in self.participants]


# -----------------------------------------------------------------------------
# Routing rules: condition + tagged action
# -----------------------------------------------------------------------------

class RuleCondition(BaseModel):
    """Empty lists match anything."""
    message_types: List[MessageType] = Field(default_factory=list)
    sender_roles: List[ParticipantRole] = Field(default_factory=list)
    urgency_levels: List[Urgency] = Field(default_factory=list)
    conversation_states: List[ConversationState] = Field(default_factory=list)

    def matches(self, draft: MessageDraft, conversation: Conversation) -> bool:
        if self.message_types and draft.message_type not in self.message_types:
            return False
        if self.urgency_levels and draft.urgency not in self.urgency_levels:
            return False
        if self.conversation_states and conversation.state not in self.conversation_states:
            return False
        if self.sender_roles:
            sender = conversation.participant(draft.sender_id)
            if sender is None or sender.role not in self.sender_roles:
                return False
        return True


class RouteAction(BaseModel):
    type: Literal["route"] = "route"
    to_agents: List[str] = Field(default_factory=list)
    to_roles: List[ParticipantRole] = Field(default_factory=list)


class BroadcastAction(BaseModel):
    type: Literal["broadcast"] = "broadcast"
    update_state: Optional[ConversationState] = None


class EscalateAction(BaseModel):
    type: Literal["escalate"] = "escalate"
    escalate_to: ParticipantRole = ParticipantRole.PRIMARY
    notify_all: bool = True


class RemindAction(BaseModel):
    type: Literal["remind"] = "remind"
    delay: Optional[float] = None # Defaults to the conversation's response timeout


RuleAction = Annotated[
    Union[RouteAction, BroadcastAction, EscalateAction, RemindAction],
    Field(discriminator="type"),
]


class RoutingRule(BaseModel):
    rule_id: str = Field(default_factory=lambda: new_id("rule"))
    name: str
    condition: RuleCondition = Field(default_factory=RuleCondition)
    action: RuleAction
    priority: int = 50
    enabled: bool = True
