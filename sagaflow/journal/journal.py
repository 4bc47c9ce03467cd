from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..state import utcnow
from .models import StepExecution, WorkflowRun

logger = logging.getLogger(__name__)


class ExecutionJournal:
    """Append-only audit trail of runs and action attempts.

    Independent from state persistence: the state repository holds the
    latest snapshot, the journal holds every attempt that led to it.
    """

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine) as session:
            yield session

    async def record_run_start(self, state_id: str, workflow_id: str) -> WorkflowRun:
        run = WorkflowRun(state_id=state_id, workflow_id=workflow_id)
        async with self.session() as session:
            session.add(run)
            await session.commit()
            await session.refresh(run)
        return run

    async def record_run_finish(self, run_id: UUID, status: str) -> None:
        async with self.session() as session:
            run = await session.get(WorkflowRun, run_id)
            if run is None:
                return
            run.status = status
            run.finished_at = utcnow()
            await session.commit()

    async def record_step_start(
        self, run_id: UUID, step: str, attempt: int = 1
    ) -> StepExecution:
        step_row = StepExecution(workflow_run_id=run_id, step_name=step, attempt=attempt)
        async with self.session() as session:
            session.add(step_row)
            await session.commit()
            await session.refresh(step_row)
        return step_row

    async def record_step_result(self, step_id: UUID, result: Any) -> None:
        async with self.session() as session:
            step = await session.get(StepExecution, step_id)
            if step is None:
                return
            step.output_payload = result if isinstance(result, dict) else {"result": result}
            step.status = "completed"
            step.finished_at = utcnow()
            await session.commit()

    async def record_step_error(self, step_id: UUID, error: str) -> None:
        async with self.session() as session:
            step = await session.get(StepExecution, step_id)
            if step is None:
                return
            step.status = "failed"
            step.error_message = error
            step.finished_at = utcnow()
            await session.commit()

    async def runs_for(self, state_id: str) -> list[WorkflowRun]:
        async with self.session() as session:
            result = await session.execute(
                select(WorkflowRun)
                .where(WorkflowRun.state_id == state_id)
                .order_by(WorkflowRun.started_at)
            )
            return list(result.scalars().all())

    async def steps_for(self, run_id: UUID) -> list[StepExecution]:
        async with self.session() as session:
            result = await session.execute(
                select(StepExecution)
                .where(StepExecution.workflow_run_id == run_id)
                .order_by(StepExecution.started_at)
            )
            return list(result.scalars().all())
