"""
Centralized configuration for the Value Cards game server.

Configuration is loaded from (in order of precedence):
1. Environment variables
2. .env file (if exists)
3. Default values

Usage:
    from config import config
    print(config.PORT)
    print(config.timing.VOTING_DURATION_SECONDS)
"""

import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get float environment variable."""
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default


@dataclass
class PhaseTiming:
    """Client-side phase timers and coordination intervals, in seconds."""
    VOTING_DURATION_SECONDS: int = 180
    VOTING_RESULT_DELAY_SECONDS: float = 3.0
    EXCHANGE_TRANSITION_DELAY_SECONDS: float = 5.0

    # Non-leaders poll for the leader's write, then take over after max wait
    LEADER_POLL_INTERVAL: float = 1.0
    LEADER_MAX_WAIT: float = 5.0

    # Reconciliation poll while the change feed is disconnected
    FALLBACK_POLL_INTERVAL: float = 5.0


@dataclass
class GameRules:
    """Tunable game rules."""
    RESONANCE_QUORUM_RATIO: float = 0.75
    REPLENISH_TARGET: int = 12


@dataclass
class ServerConfig:
    """Server configuration."""
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    # Storage and change feed (empty = in-memory / in-process)
    POSTGRES_URL: str = ""
    REDIS_URL: str = ""
    SERVER_ID: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    # Room settings
    ROOM_CODE_LENGTH: int = 4

    timing: PhaseTiming = field(default_factory=PhaseTiming)
    rules: GameRules = field(default_factory=GameRules)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        return cls(
            HOST=get_env("HOST", "0.0.0.0"),
            PORT=get_env_int("PORT", 8000),
            DEBUG=get_env_bool("DEBUG", False),
            LOG_LEVEL=get_env("LOG_LEVEL", "INFO"),
            ENVIRONMENT=get_env("ENVIRONMENT", "development"),
            POSTGRES_URL=get_env("POSTGRES_URL", ""),
            REDIS_URL=get_env("REDIS_URL", ""),
            SERVER_ID=get_env("SERVER_ID", "") or uuid.uuid4().hex[:8],
            ROOM_CODE_LENGTH=get_env_int("ROOM_CODE_LENGTH", 4),
            timing=PhaseTiming(
                VOTING_DURATION_SECONDS=get_env_int("VOTING_DURATION_SECONDS", 180),
                VOTING_RESULT_DELAY_SECONDS=get_env_float("VOTING_RESULT_DELAY_SECONDS", 3.0),
                EXCHANGE_TRANSITION_DELAY_SECONDS=get_env_float(
                    "EXCHANGE_TRANSITION_DELAY_SECONDS", 5.0
                ),
                LEADER_POLL_INTERVAL=get_env_float("LEADER_POLL_INTERVAL", 1.0),
                LEADER_MAX_WAIT=get_env_float("LEADER_MAX_WAIT", 5.0),
                FALLBACK_POLL_INTERVAL=get_env_float("FALLBACK_POLL_INTERVAL", 5.0),
            ),
            rules=GameRules(
                RESONANCE_QUORUM_RATIO=get_env_float("RESONANCE_QUORUM_RATIO", 0.75),
                REPLENISH_TARGET=get_env_int("REPLENISH_TARGET", 12),
            ),
        )


# Global config instance - loaded once at module import
config = ServerConfig.from_env()


def reload_config() -> ServerConfig:
    """Reload configuration from environment (useful for testing)."""
    global config
    config = ServerConfig.from_env()
    return config
