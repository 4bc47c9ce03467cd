from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from ..state import utcnow


class WorkflowRun(SQLModel, table=True):
    """One execute/resume pass over a workflow instance."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    state_id: str = Field(index=True)
    workflow_id: str
    status: str = Field(default="running")
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


class StepExecution(SQLModel, table=True):
    """A single attempt of an action step."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    workflow_run_id: UUID = Field(foreign_key="workflowrun.id")
    step_name: str
    status: str = Field(default="in_progress")
    attempt: int = 1
    output_payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
