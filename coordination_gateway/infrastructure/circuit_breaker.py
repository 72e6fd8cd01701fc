# coordination_gateway/infrastructure/circuit_breaker.py
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from loguru import logger

from ..errors import CircuitOpenError
from ..settings import settings


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """
    Stops connection attempts to a participant type that keeps failing.

    closed -> open after ``failure_threshold`` consecutive failures;
    open -> half-open once ``recovery_timeout`` has passed; a success in
    half-open closes the circuit, a failure opens it again.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.failure_threshold = failure_threshold or settings.BREAKER_FAILURE_THRESHOLD
        self.recovery_timeout = settings.BREAKER_RECOVERY_TIMEOUT if recovery_timeout is None else recovery_timeout
        self.clock = clock
        self.failures = 0
        self.opened_at: Optional[float] = None
        self._state = BreakerState.CLOSED

    @property
    def state(self) -> BreakerState:
        if self._state == BreakerState.OPEN and self.clock() - self.opened_at >= self.recovery_timeout:
            self._state = BreakerState.HALF_OPEN
            logger.info(f"🔌 Circuit '{self.name}' half-open, allowing a trial connection")
        return self._state

    def before_call(self) -> None:
        if self.state == BreakerState.OPEN:
            raise CircuitOpenError(
                f"Circuit for '{self.name}' is open",
                participant_type=self.name,
                retry_after=self.recovery_timeout - (self.clock() - self.opened_at),
            )

    def record_success(self) -> None:
        if self._state != BreakerState.CLOSED:
            logger.info(f"🔌 Circuit '{self.name}' closed")
        self.failures = 0
        self.opened_at = None
        self._state = BreakerState.CLOSED

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == BreakerState.HALF_OPEN or self.failures >= self.failure_threshold:
            self._state = BreakerState.OPEN
            self.opened_at = self.clock()
            logger.warning(f"🔌 Circuit '{self.name}' opened after {self.failures} failures")

    def status(self) -> Dict[str, Any]:
        return {"name": self.name, "state": self.state.value, "failures": self.failures}
