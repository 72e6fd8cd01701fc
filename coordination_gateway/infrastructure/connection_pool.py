# coordination_gateway/infrastructure/connection_pool.py
"""
Participant Connection Pool

Connections to participants are capped globally and per participant type.
Released connections stay idle in the pool and are handed out again to the
next request for the same type, as long as they have not been idle longer
than the idle timeout; older idle connections are evicted.

How a connection is actually established is up to the ``connector``
coroutine. The default connector models in-process participants and always
succeeds.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict

from ..errors import ParticipantConnectionError, PoolExhaustedError
from ..models import new_id
from ..settings import settings
from .circuit_breaker import CircuitBreaker

Connector = Callable[[str, Optional[str]], Awaitable[Any]]


async def local_connector(participant_type: str, session_id: Optional[str]) -> Dict[str, Any]:
    return {"participant_type": participant_type, "session_id": session_id, "transport": "in-process"}


class PooledConnection(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    connection_id: str
    participant_type: str
    session_id: Optional[str] = None
    created_at: float
    last_used: float
    in_use: bool = True
    use_count: int = 1
    handle: Any = None


class ConnectionPool:
    def __init__(
        self,
        max_connections: Optional[int] = None,
        max_per_type: Optional[int] = None,
        idle_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_connections = max_connections or settings.POOL_MAX_CONNECTIONS
        self.max_per_type = max_per_type or settings.POOL_MAX_PER_TYPE
        self.idle_timeout = settings.POOL_IDLE_TIMEOUT if idle_timeout is None else idle_timeout
        self.connect_timeout = connect_timeout or settings.POOL_CONNECT_TIMEOUT
        self.connector = connector or local_connector
        self.clock = clock

        self._connections: Dict[str, PooledConnection] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = asyncio.Lock()
        self._counters = {"created": 0, "reused": 0, "evicted": 0, "failed": 0}

    def breaker(self, participant_type: str) -> CircuitBreaker:
        if participant_type not in self._breakers:
            self._breakers[participant_type] = CircuitBreaker(participant_type, clock=self.clock)
        return self._breakers[participant_type]

    def _count(self, participant_type: Optional[str] = None) -> int:
        if participant_type is None:
            return len(self._connections)
        return sum(1 for c in self._connections.values() if c.participant_type == participant_type)

    def _find_idle(self, participant_type: str, now: float) -> Optional[PooledConnection]:
        for connection in self._connections.values():
            if (
                connection.participant_type == participant_type
                and not connection.in_use
                and now - connection.last_used <= self.idle_timeout
            ):
                return connection
        return None

    def _evict_expired(self, now: float) -> int:
        expired = [
            cid for cid, c in self._connections.items()
            if not c.in_use and now - c.last_used > self.idle_timeout
        ]
        for cid in expired:
            del self._connections[cid]
        self._counters["evicted"] += len(expired)
        return len(expired)

    async def acquire(self, participant_type: str, session_id: Optional[str] = None) -> PooledConnection:
        async with self._lock:
            now = self.clock()
            idle = self._find_idle(participant_type, now)
            if idle is not None:
                idle.in_use = True
                idle.last_used = now
                idle.session_id = session_id
                idle.use_count += 1
                self._counters["reused"] += 1
                return idle

            if self._count() >= self.max_connections or self._count(participant_type) >= self.max_per_type:
                self._evict_expired(now)
            if self._count() >= self.max_connections:
                raise PoolExhaustedError(
                    f"Connection pool is full ({self.max_connections} connections)",
                    participant_type=participant_type,
                )
            if self._count(participant_type) >= self.max_per_type:
                raise PoolExhaustedError(
                    f"Too many '{participant_type}' connections ({self.max_per_type})",
                    participant_type=participant_type,
                )

            self.breaker(participant_type).before_call()

            # Reserve the slot before connecting so concurrent acquires respect the caps
            connection = PooledConnection(
                connection_id=new_id("conn"),
                participant_type=participant_type,
                session_id=session_id,
                created_at=now,
                last_used=now,
            )
            self._connections[connection.connection_id] = connection

        try:
            connection.handle = await asyncio.wait_for(
                self.connector(participant_type, session_id), timeout=self.connect_timeout
            )
        except Exception as e:
            async with self._lock:
                self._connections.pop(connection.connection_id, None)
                self._counters["failed"] += 1
            self.breaker(participant_type).record_failure()
            logger.warning(f"🔌 Could not connect to {participant_type} ({session_id}): {e}")
            raise ParticipantConnectionError(
                f"Failed to connect to {participant_type}: {e}",
                participant_type=participant_type,
                session_id=session_id,
            ) from e

        self.breaker(participant_type).record_success()
        self._counters["created"] += 1
        logger.debug(f"🔌 Opened {connection.connection_id} for {participant_type}")
        return connection

    async def release(self, connection_id: str) -> None:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return
            connection.in_use = False
            connection.session_id = None
            connection.last_used = self.clock()

    async def close(self, connection_id: str) -> None:
        async with self._lock:
            self._connections.pop(connection_id, None)

    async def evict_idle(self, now: Optional[float] = None) -> int:
        async with self._lock:
            evicted = self._evict_expired(self.clock() if now is None else now)
        if evicted:
            logger.info(f"🧹 Evicted {evicted} idle connections")
        return evicted

    async def drain(self) -> int:
        async with self._lock:
            count = len(self._connections)
            self._connections.clear()
        return count

    def connections(self) -> List[PooledConnection]:
        return list(self._connections.values())

    def statistics(self) -> Dict[str, Any]:
        active = sum(1 for c in self._connections.values() if c.in_use)
        by_type: Dict[str, Dict[str, int]] = {}
        for c in self._connections.values():
            entry = by_type.setdefault(c.participant_type, {"total": 0, "active": 0})
            entry["total"] += 1
            entry["active"] += int(c.in_use)
        return {
            "total_connections": len(self._connections),
            "active_connections": active,
            "idle_connections": len(self._connections) - active,
            "max_connections": self.max_connections,
            "max_per_type": self.max_per_type,
            "utilization": len(self._connections) / self.max_connections,
            "by_type": by_type,
            "breakers": {name: b.status() for name, b in self._breakers.items()},
            **self._counters,
        }
