"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Protocol

from ..state import WorkflowState


class StateRepository(Protocol):
    """Protocol for workflow state persistence backends.

    ``save`` always overwrites the complete document for ``state.id``.
    """

    async def save(self, state: WorkflowState) -> None:
        """Persist the full state."""

    async def load(self, state_id: str) -> WorkflowState | None:
        """Return the stored state, or ``None`` when unknown."""

    async def delete(self, state_id: str) -> None:
        """Remove a stored state if present."""

    async def list_states(self) -> list[WorkflowState]:
        """Return all persisted states."""
