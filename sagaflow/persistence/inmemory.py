"""In-memory implementation of the state repository."""

from __future__ import annotations

from typing import Dict

from ..state import WorkflowState
from .repository import StateRepository


class InMemoryStateRepository(StateRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. States are kept as JSON so a loaded
    state never aliases the live object the engine is mutating.
    """

    def __init__(self) -> None:
        self._states: Dict[str, str] = {}

    async def save(self, state: WorkflowState) -> None:
        self._states[state.id] = state.to_json()

    async def load(self, state_id: str) -> WorkflowState | None:
        raw = self._states.get(state_id)
        return WorkflowState.from_json(raw) if raw is not None else None

    async def delete(self, state_id: str) -> None:
        self._states.pop(state_id, None)

    async def list_states(self) -> list[WorkflowState]:
        return [WorkflowState.from_json(raw) for raw in self._states.values()]
