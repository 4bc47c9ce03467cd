"""SQLite implementation of the state repository."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any

from ..state import WorkflowState, utcnow
from .repository import StateRepository


class SQLiteStateRepository(StateRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_states (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                body TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Repository API
    async def save(self, state: WorkflowState) -> None:
        body = state.to_json()
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_states (id, workflow_id, status, body, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                workflow_id = excluded.workflow_id,
                status = excluded.status,
                body = excluded.body,
                updated_at = excluded.updated_at
            """,
            state.id,
            state.workflow_id,
            state.status.value,
            body,
            utcnow().isoformat(),
        )

    async def load(self, state_id: str) -> WorkflowState | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM workflow_states WHERE id = ?",
            state_id,
        )
        if not row:
            return None
        return WorkflowState.from_json(row["body"])

    async def delete(self, state_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM workflow_states WHERE id = ?", state_id
        )

    async def list_states(self) -> list[WorkflowState]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM workflow_states ORDER BY updated_at",
        )
        return [WorkflowState.from_json(row["body"]) for row in rows]

    def close(self) -> None:
        self._conn.close()
