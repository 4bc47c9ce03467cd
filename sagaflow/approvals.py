"""Bookkeeping for pending human approvals."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .errors import ApprovalError
from .state import ApprovalStatus, utcnow

logger = logging.getLogger(__name__)


class ApprovalRequest(BaseModel):
    """A gate waiting for every required approver, or for one rejection."""

    state_id: str
    step_name: str
    approvers: List[str]
    approved_by: List[str] = Field(default_factory=list)
    rejected_by: Optional[str] = None
    reason: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @property
    def satisfied(self) -> bool:
        return self.status != ApprovalStatus.PENDING

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


class ApprovalManager:
    """Tracks pending approval requests, one per workflow instance.

    The manager only records votes and decides when a request is satisfied;
    resuming the paused workflow is the engine's job.
    """

    def __init__(self) -> None:
        self._pending: Dict[str, ApprovalRequest] = {}
        self._lock = threading.Lock()

    def request(
        self,
        state_id: str,
        step_name: str,
        approvers: Iterable[str],
        *,
        approved_by: Iterable[str] = (),
        requested_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """Register a pending request, replacing any previous one for ``state_id``.

        ``approved_by`` restores votes cast before a restart.
        """
        request = ApprovalRequest(
            state_id=state_id,
            step_name=step_name,
            approvers=list(approvers),
            approved_by=list(approved_by),
            requested_at=requested_at or utcnow(),
            expires_at=expires_at,
        )
        with self._lock:
            self._pending[state_id] = request
        logger.info(
            f"Approval '{step_name}' requested for {state_id} from {', '.join(request.approvers)}"
        )
        return request

    def _require(self, state_id: str, approver: str) -> ApprovalRequest:
        request = self._pending.get(state_id)
        if request is None:
            raise ApprovalError(f"no pending approval for {state_id}")
        if approver not in request.approvers:
            raise ApprovalError(
                f"{approver} is not an approver for '{request.step_name}' on {state_id}"
            )
        return request

    def approve(self, state_id: str, approver: str) -> ApprovalRequest:
        """Record ``approver``'s vote.

        Returns:
            A copy of the request. Its status is ``approved`` once every required
            approver has voted, at which point it is no longer pending.

        Raises:
            ApprovalError: If nothing is pending or ``approver`` is not required.
        """
        with self._lock:
            request = self._require(state_id, approver)
            if approver not in request.approved_by:
                request.approved_by.append(approver)
            if all(a in request.approved_by for a in request.approvers):
                request.status = ApprovalStatus.APPROVED
                del self._pending[state_id]
            result = request.model_copy(deep=True)
        logger.info(f"{approver} approved '{result.step_name}' for {state_id}")
        return result

    def reject(self, state_id: str, approver: str, reason: str = "") -> ApprovalRequest:
        """Satisfy the request with a rejection.

        Raises:
            ApprovalError: If nothing is pending or ``approver`` is not required.
        """
        with self._lock:
            request = self._require(state_id, approver)
            request.status = ApprovalStatus.REJECTED
            request.rejected_by = approver
            request.reason = reason
            del self._pending[state_id]
            result = request.model_copy(deep=True)
        logger.info(f"{approver} rejected '{result.step_name}' for {state_id}: {reason}")
        return result

    def expire(self, state_id: str, reason: str = "approval timed out") -> Optional[ApprovalRequest]:
        """Reject the pending request of ``state_id`` on behalf of its deadline."""
        with self._lock:
            request = self._pending.pop(state_id, None)
            if request is None:
                return None
            request.status = ApprovalStatus.REJECTED
            request.reason = reason
            result = request.model_copy(deep=True)
        logger.warning(f"Approval '{result.step_name}' for {state_id} expired")
        return result

    def get(self, state_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            request = self._pending.get(state_id)
            return request.model_copy(deep=True) if request else None

    def discard(self, state_id: str) -> None:
        with self._lock:
            self._pending.pop(state_id, None)

    def pending(self) -> List[ApprovalRequest]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._pending.values()]

    def expired(self, now: Optional[datetime] = None) -> List[ApprovalRequest]:
        """Pending requests whose deadline has passed."""
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._pending.values()
                if r.is_expired(now)
            ]
