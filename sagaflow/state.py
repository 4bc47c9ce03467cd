"""Execution state of a single workflow instance."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field, PrivateAttr


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPENSATING = "compensating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CompensationRecord(BaseModel):
    """A rollback registered by a successful action.

    Only the step identity is persisted; the handler is looked up on the
    workflow definition when the stack unwinds.
    """

    step_name: str
    step_index: int


class ApprovalRecord(BaseModel):
    """Durable bookkeeping for one approval gate."""

    step_name: str
    approvers: List[str]
    approved_by: List[str] = Field(default_factory=list)
    rejected_by: Optional[str] = None
    reason: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @property
    def outstanding(self) -> List[str]:
        return [a for a in self.approvers if a not in self.approved_by]


class WorkflowState(BaseModel):
    """Mutable record of one running workflow instance.

    The executing task owns most writes. External calls (approve, reject,
    signals) may race with it, so field mutations go through :meth:`locked`.
    The lock is never held across an ``await``.
    """

    id: str
    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    data: Dict[str, Any] = Field(default_factory=dict)
    step_results: Dict[str, Any] = Field(default_factory=dict)
    current_step: int = 0
    checkpoints: Dict[str, int] = Field(default_factory=dict)
    compensations: List[CompensationRecord] = Field(default_factory=list)
    compensated: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    approvals: Dict[str, ApprovalRecord] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    @contextmanager
    def locked(self) -> Iterator["WorkflowState"]:
        with self._lock:
            yield self

    # ------------------------------------------------------------------
    # Data bag helpers
    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self.data[key] = value

    def result(self, step_name: str, default: Any = None) -> Any:
        with self._lock:
            return self.step_results.get(step_name, default)

    # ------------------------------------------------------------------
    # Engine bookkeeping
    def set_status(self, status: WorkflowStatus) -> None:
        with self._lock:
            self.status = status

    def record_result(self, step_name: str, value: Any) -> None:
        with self._lock:
            self.step_results[step_name] = value

    def record_error(self, message: str) -> None:
        with self._lock:
            self.errors.append(message)

    def push_compensation(self, step_name: str, step_index: int) -> None:
        with self._lock:
            self.compensations.append(
                CompensationRecord(step_name=step_name, step_index=step_index)
            )

    def rewind(self, step_index: int) -> None:
        """Move back to ``step_index`` and forget rollbacks registered from there on."""
        with self._lock:
            self.current_step = step_index
            self.compensations = [
                c for c in self.compensations if c.step_index < step_index
            ]

    def snapshot(self) -> "WorkflowState":
        """Independent copy suitable for handing to another task or backend."""
        with self._lock:
            return WorkflowState.model_validate_json(self.model_dump_json())

    def to_json(self) -> str:
        with self._lock:
            return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkflowState":
        return cls.model_validate_json(data)
