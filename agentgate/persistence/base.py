"""
InstanceStore Base Interface

Abstract interface for workflow instance persistence. The engine writes
every state transition through to the store; the in-memory instance table
stays authoritative while a run is live.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..schemas.execution import InstanceFilters, WorkflowInstance


class InstanceStore(ABC):
    """
    Abstract interface for instance persistence.

    Implementations:
    - InMemoryInstanceStore: For testing (no persistence)
    - SQLiteInstanceStore: File-based persistence
    """

    @abstractmethod
    async def save(self, instance: WorkflowInstance) -> None:
        """Save or update an instance."""
        pass

    @abstractmethod
    async def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Get an instance by ID."""
        pass

    @abstractmethod
    async def delete(self, instance_id: str) -> bool:
        """Delete an instance. Returns True if deleted."""
        pass

    @abstractmethod
    async def list_instances(self, filters: Optional[InstanceFilters] = None) -> List[WorkflowInstance]:
        """
        List instances matching the filters, newest first.

        Paging uses filters.limit/offset as given; a None limit returns
        every match.
        """
        pass
