"""
AgentGate Configuration Module

Centralized process settings from environment variables, plus loading of
the node configuration file that declares AI providers and policy.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum
from pathlib import Path

from .schemas.node_config import NodeConfig, merge_ai_config


logger = logging.getLogger(__name__)


class PersistenceBackend(str, Enum):
    """Supported persistence backends."""
    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass
class ExecutionLimits:
    """Defaults applied by the engine and the provider adapters."""
    retry_delay_ms: int = 1000
    retry_backoff_multiplier: float = 2.0
    on_error_retry_attempts: int = 3
    provider_timeout_seconds: float = 60.0
    list_default_limit: int = 50


@dataclass
class PersistenceConfig:
    """Persistence layer configuration."""
    backend: PersistenceBackend = PersistenceBackend.MEMORY
    sqlite_path: str = "./agentgate_instances.db"


@dataclass
class AgentGateConfig:
    """Main configuration container."""
    limits: ExecutionLimits
    persistence: PersistenceConfig
    resume_continues: bool = True
    node_config_path: Optional[str] = None
    debug: bool = False
    log_level: str = "INFO"


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def load_config() -> AgentGateConfig:
    """
    Load configuration from environment variables.

    Environment Variables:
        AGENTGATE_RETRY_DELAY_MS: Default retry delay in ms (default: 1000)
        AGENTGATE_RETRY_BACKOFF: Default backoff multiplier (default: 2.0)
        AGENTGATE_ON_ERROR_RETRY_ATTEMPTS: Attempts for `on_error: retry` without a retry block (default: 3)
        AGENTGATE_PROVIDER_TIMEOUT: Provider request timeout in seconds (default: 60)
        AGENTGATE_LIST_LIMIT: Default page size for instance listing (default: 50)
        AGENTGATE_PERSISTENCE_BACKEND: Persistence backend (memory|sqlite)
        AGENTGATE_SQLITE_PATH: SQLite database path (default: ./agentgate_instances.db)
        AGENTGATE_RESUME_CONTINUES: Resume re-enters the run loop automatically (default: true)
        AGENTGATE_NODE_CONFIG: Path to the node configuration JSON file
        AGENTGATE_DEBUG: Enable debug mode (default: false)
        AGENTGATE_LOG_LEVEL: Log level (default: INFO)
    """
    limits = ExecutionLimits(
        retry_delay_ms=int(os.getenv("AGENTGATE_RETRY_DELAY_MS", "1000")),
        retry_backoff_multiplier=float(os.getenv("AGENTGATE_RETRY_BACKOFF", "2.0")),
        on_error_retry_attempts=int(os.getenv("AGENTGATE_ON_ERROR_RETRY_ATTEMPTS", "3")),
        provider_timeout_seconds=float(os.getenv("AGENTGATE_PROVIDER_TIMEOUT", "60")),
        list_default_limit=int(os.getenv("AGENTGATE_LIST_LIMIT", "50")),
    )

    backend_str = os.getenv("AGENTGATE_PERSISTENCE_BACKEND", "memory").lower()
    try:
        backend = PersistenceBackend(backend_str)
    except ValueError:
        logger.warning(f"Unknown persistence backend '{backend_str}', using memory")
        backend = PersistenceBackend.MEMORY

    persistence = PersistenceConfig(
        backend=backend,
        sqlite_path=os.getenv("AGENTGATE_SQLITE_PATH", "./agentgate_instances.db"),
    )

    return AgentGateConfig(
        limits=limits,
        persistence=persistence,
        resume_continues=_flag("AGENTGATE_RESUME_CONTINUES", "true"),
        node_config_path=os.getenv("AGENTGATE_NODE_CONFIG") or None,
        debug=_flag("AGENTGATE_DEBUG", "false"),
        log_level=os.getenv("AGENTGATE_LOG_LEVEL", "INFO").upper(),
    )


def load_node_config(path: Optional[str] = None) -> NodeConfig:
    """
    Read the node configuration JSON file.

    Falls back to AGENTGATE_NODE_CONFIG, and to an AI-disabled default
    when no path is configured.
    """
    path = path or get_config().node_config_path
    if not path:
        return NodeConfig()
    data: Dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))
    extra = {k: v for k, v in data.items() if k != "ai"}
    return NodeConfig(ai=merge_ai_config(None, data.get("ai")), **extra)


# Singleton config instance
_config: Optional[AgentGateConfig] = None


def get_config() -> AgentGateConfig:
    """Get the global configuration (lazy-loaded singleton)."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    global _config
    _config = None
