from .engine import ConflictResolutionEngine
from .strategies import check_quorum
from .types import Decision, QuorumResult, ResolutionRequest, ResolutionStrategy, Vote

__all__ = [
    "ConflictResolutionEngine",
    "check_quorum",
    "Decision",
    "QuorumResult",
    "ResolutionRequest",
    "ResolutionStrategy",
    "Vote",
]
