"""
In-Memory Instance Store

Keeps serialized snapshots in a dict. Nothing survives a restart.
"""

from typing import Dict, List, Optional
import copy

from .base import InstanceStore
from ..schemas.execution import InstanceFilters, WorkflowInstance


class InMemoryInstanceStore(InstanceStore):
    """
    Dict-backed store for tests and single-process use.

    Snapshots are stored as dicts so later mutation of a live instance
    never leaks into the store.
    """

    def __init__(self):
        self._instances: Dict[str, dict] = {}

    async def save(self, instance: WorkflowInstance) -> None:
        self._instances[instance.id] = copy.deepcopy(instance.to_dict())

    async def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        data = self._instances.get(instance_id)
        return WorkflowInstance.from_dict(copy.deepcopy(data)) if data else None

    async def delete(self, instance_id: str) -> bool:
        return self._instances.pop(instance_id, None) is not None

    async def list_instances(self, filters: Optional[InstanceFilters] = None) -> List[WorkflowInstance]:
        filters = filters or InstanceFilters()
        instances = [WorkflowInstance.from_dict(copy.deepcopy(d)) for d in self._instances.values()]
        instances.sort(key=lambda i: i.started_at, reverse=True)
        matched = [i for i in instances if filters.matches(i)]
        if filters.limit is None:
            return matched[filters.offset:]
        return matched[filters.offset:filters.offset + filters.limit]

    def clear(self) -> None:
        """Clear all stored instances (useful for testing)."""
        self._instances.clear()
