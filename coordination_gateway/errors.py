# coordination_gateway/errors.py
"""
Error taxonomy and the fallback-aware error handler.

Validation problems are reported to the caller, infrastructure failures
may be absorbed by a fallback path, and integrity violations are always
critical and never auto-resolved.
"""

import time
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class CoordinationError(Exception):
    """Base class for every error raised by the coordination core."""

    code = "coordination_error"
    severity = "medium"
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "error_type": self.code,
            "severity": self.severity,
            "retryable": self.retryable,
            "context": self.context,
        }


class ValidationFailure(CoordinationError):
    code = "validation_error"
    severity = "low"


class MessageValidationError(ValidationFailure):
    code = "message_validation_error"


class ParticipantValidationError(ValidationFailure):
    code = "participant_validation_error"


class ConversationNotFoundError(CoordinationError):
    code = "conversation_not_found"
    severity = "low"


class InvalidTransitionError(CoordinationError):
    code = "invalid_transition"


class ParticipantConnectionError(CoordinationError):
    code = "participant_connection_error"
    severity = "high"
    retryable = True


class PoolExhaustedError(ParticipantConnectionError):
    code = "pool_exhausted"


class CircuitOpenError(ParticipantConnectionError):
    code = "circuit_open"


class ResolutionTimeoutError(CoordinationError):
    code = "resolution_timeout"
    severity = "high"
    retryable = True


class ContextConflictError(CoordinationError):
    code = "context_conflict"


class VersionNotFoundError(CoordinationError):
    code = "version_not_found"
    severity = "low"


class IntegrityError(CoordinationError):
    code = "integrity_violation"
    severity = "critical"


# Errors whose meaning must reach the caller unchanged; a fallback would hide them.
NON_RECOVERABLE = (ValidationFailure, ConversationNotFoundError, InvalidTransitionError, IntegrityError)


class ErrorHandler:
    """
    Runs coordination operations, records failures, and applies fallbacks.

    A fallback only runs for infrastructure failures (connection, pool,
    timeout, unexpected exceptions). Validation and integrity errors are
    re-raised so the caller can report them per item.
    """

    def __init__(self, history_limit: int = 200):
        self.history_limit = history_limit
        self._history: List[Dict[str, Any]] = []
        self._fallbacks_used = 0

    async def execute(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], Awaitable[T]]] = None,
    ) -> T:
        try:
            return await fn()
        except NON_RECOVERABLE:
            raise
        except Exception as e:
            self._record(operation, e)
            if fallback is None:
                raise
            logger.warning(f"🔄 Using fallback for {operation}: {e}")
            self._fallbacks_used += 1
            return await fallback()

    def _record(self, operation: str, error: Exception) -> None:
        self._history.append({
            "operation": operation,
            "error_type": getattr(error, "code", type(error).__name__),
            "message": str(error),
            "timestamp": time.time(),
        })
        del self._history[:-self.history_limit]
        logger.error(f"❌ {operation} failed: {error}")

    def stats(self) -> Dict[str, Any]:
        by_type = Counter(entry["error_type"] for entry in self._history)
        return {
            "total_errors": len(self._history),
            "fallbacks_used": self._fallbacks_used,
            "errors_by_type": dict(by_type),
            "recent": self._history[-5:],
        }

    def clear(self) -> None:
        self._history.clear()
        self._fallbacks_used = 0
