"""Expense approval: the run pauses until both managers approve."""

import asyncio

from sagaflow import WorkflowBuilder, WorkflowEngine
from sagaflow.persistence import InMemoryStateRepository

expense = (
    WorkflowBuilder("expense")
    .step("hold_budget", lambda ctx, state: "held", compensate=lambda ctx, state: print("Budget released"))
    .await_approval("managers", ["alice", "bob"], timeout=3600)
    .step("pay", lambda ctx, state: print(f"Paying {state.get('amount')}"))
    .build()
)


async def main():
    engine = WorkflowEngine(repository=InMemoryStateRepository())
    engine.register(expense)

    state_id = await engine.start("expense", {"amount": 120})
    state = await engine.wait(state_id)
    print(f"{state_id} is {state.status.value}, waiting on {state.approvals['managers'].outstanding}")

    await engine.approve(state_id, "alice")
    await engine.approve(state_id, "bob")
    state = await engine.wait(state_id)
    print(f"{state_id} is {state.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
