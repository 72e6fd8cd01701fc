from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class GatewaySettings(BaseSettings):
    """
    Centralized configuration for the Coordination Gateway.
    Reads from environment variables, .env file, and defaults.
    """
    # Server Configuration
    MCP_SERVER_HOST: str = "127.0.0.1"
    MCP_SERVER_PORT: int = 8090
    API_PORT: int = 8091
    MCP_URL: Optional[str] = None # Defaults to http://MCP_SERVER_HOST:MCP_SERVER_PORT

    # Conversation timeouts (seconds)
    RESPONSE_TIMEOUT: float = 30.0
    INACTIVITY_TIMEOUT: float = 300.0
    TOTAL_CONVERSATION_TIMEOUT: float = 3600.0
    MONITOR_INTERVAL: float = 30.0
    CONVERSATION_ARCHIVE_LIMIT: int = 500 # Completed conversations kept for status queries

    # Conflict resolution
    CONSENSUS_THRESHOLD: float = 0.75
    DEFAULT_QUORUM: float = 0.5
    MAX_NEGOTIATION_ROUNDS: int = 5
    RESOLUTION_BUDGET: float = 10.0 # Wall-clock budget for a single resolution

    # Context synchronization
    CONCURRENCY_WINDOW: float = 1.0 # Writes from different agents closer than this collide
    SNAPSHOT_RETENTION: int = 50
    CONVERGENCE_TIMEOUT: float = 5.0

    # Participant connection pool
    POOL_MAX_CONNECTIONS: int = 50
    POOL_MAX_PER_TYPE: int = 10
    POOL_IDLE_TIMEOUT: float = 300.0
    POOL_CONNECT_TIMEOUT: float = 30.0

    # Circuit breaker
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_RECOVERY_TIMEOUT: float = 60.0

    # Tool execution
    TOOL_TIMEOUT: float = 30.0

    # Monitoring
    MONITOR_HISTORY: int = 1000 # Finished coordination records kept by the monitor

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Load from .env file if present
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GATEWAY_",  # Variables must start with GATEWAY_, e.g., GATEWAY_MCP_SERVER_PORT
        extra='ignore'
    )

    @property
    def mcp_url(self) -> str:
        return self.MCP_URL or f"http://{self.MCP_SERVER_HOST}:{self.MCP_SERVER_PORT}"

# Instantiate global settings object
settings = GatewaySettings()
