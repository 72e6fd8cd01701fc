from .manager import ConversationEvent, ConversationManager, InitiationResult
from .router import MessageRouter, RoutingResult
from .rules import default_rules

__all__ = [
    "ConversationEvent",
    "ConversationManager",
    "InitiationResult",
    "MessageRouter",
    "RoutingResult",
    "default_rules",
]
