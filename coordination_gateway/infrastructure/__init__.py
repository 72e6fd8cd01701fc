from .circuit_breaker import BreakerState, CircuitBreaker
from .connection_pool import ConnectionPool, PooledConnection, local_connector

__all__ = ["BreakerState", "CircuitBreaker", "ConnectionPool", "PooledConnection", "local_connector"]
