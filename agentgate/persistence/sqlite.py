"""
SQLite Instance Store

File-based persistent storage for single-server deployments.
"""

import json
import sqlite3
import asyncio
from typing import Any, List, Optional
from pathlib import Path

from .base import InstanceStore
from ..schemas.execution import InstanceFilters, WorkflowInstance, utcnow


class SQLiteInstanceStore(InstanceStore):
    """
    SQLite-backed instance store.

    Filterable columns are stored alongside the full JSON snapshot; all
    queries run in the event loop's default executor.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS workflow_instances (
        id TEXT PRIMARY KEY,
        definition_id TEXT NOT NULL,
        status TEXT NOT NULL,
        initiator_type TEXT NOT NULL,
        initiator_id TEXT,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        data TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_instances_status ON workflow_instances(status);
    CREATE INDEX IF NOT EXISTS idx_instances_definition ON workflow_instances(definition_id);
    CREATE INDEX IF NOT EXISTS idx_instances_initiator ON workflow_instances(initiator_type, initiator_id);
    """

    def __init__(self, db_path: str = "./agentgate_instances.db"):
        self.db_path = db_path
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure database and tables exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.executescript(self.CREATE_TABLE_SQL)

    def _get_connection(self) -> sqlite3.Connection:
        """Get a new database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn):
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    async def save(self, instance: WorkflowInstance) -> None:
        """Save or update an instance."""
        # Serialize on the loop thread; the run loop keeps mutating the instance
        data = instance.to_dict()
        payload = json.dumps(data, default=str)

        def _save():
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO workflow_instances
                    (id, definition_id, status, initiator_type, initiator_id,
                     started_at, completed_at, data, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    data["id"],
                    data["definition_id"],
                    data["status"],
                    data["initiator"]["type"],
                    data["initiator"]["id"],
                    data["started_at"],
                    data["completed_at"],
                    payload,
                    utcnow().isoformat(),
                ))

        await self._run(_save)

    async def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Get an instance by ID."""
        def _get():
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT data FROM workflow_instances WHERE id = ?",
                    (instance_id,)
                ).fetchone()
                return self._row_to_instance(row) if row else None

        return await self._run(_get)

    async def delete(self, instance_id: str) -> bool:
        """Delete an instance."""
        def _delete():
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM workflow_instances WHERE id = ?",
                    (instance_id,)
                )
                return cursor.rowcount > 0

        return await self._run(_delete)

    async def list_instances(self, filters: Optional[InstanceFilters] = None) -> List[WorkflowInstance]:
        """List instances matching filters, newest first."""
        filters = filters or InstanceFilters()
        clauses: List[str] = []
        params: List[Any] = []

        if filters.definition_id:
            clauses.append("definition_id = ?")
            params.append(filters.definition_id)
        if filters.status:
            clauses.append(f"status IN ({', '.join('?' for _ in filters.status)})")
            params.extend(s.value for s in filters.status)
        if filters.initiator_type:
            clauses.append("initiator_type = ?")
            params.append(filters.initiator_type.value)
        if filters.initiator_id:
            clauses.append("initiator_id = ?")
            params.append(filters.initiator_id)

        sql = "SELECT data FROM workflow_instances"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY started_at DESC"

        def _list():
            with self._get_connection() as conn:
                rows = conn.execute(sql, params).fetchall()
                return [self._row_to_instance(row) for row in rows]

        # Date bounds compare datetimes, not ISO strings with mixed offsets
        matched = [i for i in await self._run(_list) if filters.matches(i)]
        if filters.limit is None:
            return matched[filters.offset:]
        return matched[filters.offset:filters.offset + filters.limit]

    def _row_to_instance(self, row: sqlite3.Row) -> WorkflowInstance:
        return WorkflowInstance.from_dict(json.loads(row["data"]))
