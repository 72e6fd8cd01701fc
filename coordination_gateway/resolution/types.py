# coordination_gateway/resolution/types.py
"""Inputs and outputs of the conflict resolution strategies."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import Severity

DEFAULT_TIERS = ["team-lead", "architecture-board", "senior-management"]
MANUAL_INTERVENTION = "manual-intervention"


class ResolutionStrategy(str, Enum):
    MAJORITY_VOTE = "majority-vote"
    WEIGHTED_VOTE = "weighted-vote"
    EXPERT_AUTHORITY = "expert-authority"
    CONSENSUS_BUILDING = "consensus-building"
    COLLABORATIVE_NEGOTIATION = "collaborative-negotiation"
    EVIDENCE_BASED = "evidence-based-resolution"
    AUTOMATED_COMPROMISE = "automated-compromise"
    ESCALATION_HIERARCHY = "escalation-hierarchy"


VOTING_STRATEGIES = (
    ResolutionStrategy.MAJORITY_VOTE,
    ResolutionStrategy.WEIGHTED_VOTE,
    ResolutionStrategy.CONSENSUS_BUILDING,
    ResolutionStrategy.COLLABORATIVE_NEGOTIATION,
)

ITERATIVE_STRATEGIES = (
    ResolutionStrategy.CONSENSUS_BUILDING,
    ResolutionStrategy.COLLABORATIVE_NEGOTIATION,
)


class Vote(BaseModel):
    agent_id: str
    option: str
    weight: float = Field(default=1.0, ge=0.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class Position(BaseModel):
    agent_id: str
    option: str
    authority: float = Field(default=1.0, ge=0.0)
    expertise: str = "general"
    rationale: str = ""


class EvidenceItem(BaseModel):
    description: str = ""
    credibility: float = Field(ge=0.0, le=1.0)
    weight: float = Field(default=1.0, ge=0.0)


class EvidencePackage(BaseModel):
    agent_id: str
    option: str
    evidence: List[EvidenceItem] = Field(default_factory=list)


class Requirement(BaseModel):
    agent_id: str
    parameter: str
    value: float
    weight: float = Field(default=1.0, gt=0.0)


class QuorumResult(BaseModel):
    quorum_met: bool
    participation_rate: float
    required: float
    total_participants: int
    actual_participants: int
    retry_recommended: bool
    reason: Optional[str] = None


class Decision(BaseModel):
    resolved: bool
    strategy: ResolutionStrategy
    value: Any = None
    score: float = 0.0
    details: Dict[str, Any] = Field(default_factory=dict)
    escalated: bool = False
    escalation_level: Optional[str] = None
    reason: Optional[str] = None
    rounds: int = 0
    timed_out: bool = False
    quorum: Optional[QuorumResult] = None
    duration: float = 0.0


class ResolutionRequest(BaseModel):
    strategy: ResolutionStrategy
    conversation_id: Optional[str] = None
    severity: Severity = Severity.MEDIUM
    votes: List[Vote] = Field(default_factory=list)
    rounds: List[List[Vote]] = Field(default_factory=list)
    positions: List[Position] = Field(default_factory=list)
    evidence: List[EvidencePackage] = Field(default_factory=list)
    requirements: List[Requirement] = Field(default_factory=list)
    eligible_participants: Optional[int] = Field(default=None, ge=0)
    quorum: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    threshold: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    budget: Optional[float] = Field(default=None, gt=0.0)
    fallback_strategy: ResolutionStrategy = ResolutionStrategy.MAJORITY_VOTE
    tiers: List[str] = Field(default_factory=lambda: list(DEFAULT_TIERS))
    current_level: Optional[str] = None

    def vote_rounds(self) -> List[List[Vote]]:
        """Iterative strategies accept either explicit rounds or a single round of votes."""
        if self.rounds:
            return self.rounds
        return [self.votes] if self.votes else []

    def final_votes(self) -> List[Vote]:
        rounds = self.vote_rounds()
        return rounds[-1] if rounds else []

    def options(self) -> List[str]:
        """Every option mentioned in the request, in first-seen order."""
        seen: List[str] = []
        candidates = [v.option for v in self.votes]
        candidates += [v.option for r in self.rounds for v in r]
        candidates += [p.option for p in self.positions]
        candidates += [p.option for p in self.evidence]
        for option in candidates:
            if option not in seen:
                seen.append(option)
        return seen
