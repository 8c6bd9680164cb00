"""AgentGate Persistence Module - Workflow instance storage."""

from .base import InstanceStore
from .memory import InMemoryInstanceStore
from .sqlite import SQLiteInstanceStore

__all__ = [
    "InstanceStore",
    "InMemoryInstanceStore",
    "SQLiteInstanceStore",
    "get_instance_store",
]


def get_instance_store(config=None) -> InstanceStore:
    """
    Get the configured instance store.

    Returns the store selected by AGENTGATE_PERSISTENCE_BACKEND:
    - memory: In-memory (default)
    - sqlite: SQLite file-based
    """
    from ..config import get_config, PersistenceBackend

    config = config or get_config()

    if config.persistence.backend == PersistenceBackend.SQLITE:
        return SQLiteInstanceStore(config.persistence.sqlite_path)
    return InMemoryInstanceStore()
