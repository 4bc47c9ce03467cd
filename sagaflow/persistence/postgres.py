"""PostgreSQL implementation of the state repository."""

from __future__ import annotations

import asyncpg

from ..state import WorkflowState, utcnow
from .repository import StateRepository


class PostgresStateRepository(StateRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_states (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                body JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def save(self, state: WorkflowState) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_states (id, workflow_id, status, body, updated_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE SET
                    workflow_id = EXCLUDED.workflow_id,
                    status = EXCLUDED.status,
                    body = EXCLUDED.body,
                    updated_at = EXCLUDED.updated_at
                """,
                state.id,
                state.workflow_id,
                state.status.value,
                state.to_json(),
                utcnow(),
            )
        finally:
            await conn.close()

    async def load(self, state_id: str) -> WorkflowState | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT body FROM workflow_states WHERE id = $1", state_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return WorkflowState.from_json(row["body"])

    async def delete(self, state_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute("DELETE FROM workflow_states WHERE id = $1", state_id)
        finally:
            await conn.close()

    async def list_states(self) -> list[WorkflowState]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body FROM workflow_states ORDER BY updated_at"
            )
        finally:
            await conn.close()
        return [WorkflowState.from_json(row["body"]) for row in rows]
