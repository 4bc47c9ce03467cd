"""End-to-end order saga over SQLite persistence and the execution journal."""

import pytest

from sagaflow import (
    ExecutionJournal,
    RetryPolicy,
    WorkflowBuilder,
    WorkflowEngine,
    WorkflowStatus,
    chain,
)
from sagaflow.persistence import SQLiteStateRepository


class FakeServices:
    def __init__(self, fail_shipping=False):
        self.fail_shipping = fail_shipping
        self.events = []

    def reserve(self, ctx, state):
        self.events.append("reserve")
        return {"reservation": f"r-{state.get('order_id')}"}

    def release(self, ctx, state):
        self.events.append("release")

    async def charge(self, ctx, state):
        self.events.append("charge")
        state.set("charged", state.get("amount"))
        return {"tx": "tx-1"}

    async def refund(self, ctx, state):
        self.events.append("refund")
        state.set("refunded", state.get("charged"))

    def email(self, ctx, state):
        self.events.append("email")

    def sms(self, ctx, state):
        self.events.append("sms")

    def ship(self, ctx, state):
        self.events.append("ship")
        if self.fail_shipping:
            raise RuntimeError("no courier available")
        return {"tracking": "trk-1"}


def order_workflow(services: FakeServices):
    return (
        WorkflowBuilder("order")
        .step("reserve_stock", services.reserve, compensate=services.release)
        .step("charge_card", services.charge, compensate=services.refund)
        .retry(RetryPolicy(max_attempts=2, initial_delay=0))
        .parallel(
            "notify",
            chain().step("email", services.email),
            chain().step("sms", services.sms),
        )
        .if_(
            "needs_shipping",
            lambda s: not s.get("digital", False),
            then=chain().step("ship", services.ship),
        )
        .build()
    )


@pytest.mark.asyncio
async def test_order_saga_happy_path(tmp_path):
    services = FakeServices()
    journal = ExecutionJournal(f"sqlite+aiosqlite:///{tmp_path / 'journal.db'}")
    await journal.init_db()
    repo = SQLiteStateRepository(tmp_path / "state.db")
    engine = WorkflowEngine(repository=repo, journal=journal)
    engine.register(order_workflow(services))

    state_id = await engine.start("order", {"order_id": "o-1", "amount": 30})
    state = await engine.wait(state_id, timeout=2)

    assert state.status == WorkflowStatus.COMPLETED
    assert services.events[:2] == ["reserve", "charge"]
    assert set(services.events[2:4]) == {"email", "sms"}
    assert services.events[-1] == "ship"
    assert state.result("ship") == {"tracking": "trk-1"}

    stored = await repo.load(state_id)
    assert stored.status == WorkflowStatus.COMPLETED
    assert stored.checkpoints == {
        "reserve_stock": 0,
        "charge_card": 1,
        "notify": 2,
        "needs_shipping": 3,
    }

    runs = await journal.runs_for(state_id)
    assert [r.status for r in runs] == ["completed"]
    journaled = {s.step_name for s in await journal.steps_for(runs[0].id)}
    assert journaled == {"reserve_stock", "charge_card", "email", "sms", "ship"}
    await journal.close()


@pytest.mark.asyncio
async def test_order_saga_rolls_back_when_shipping_fails(tmp_path):
    services = FakeServices(fail_shipping=True)
    repo = SQLiteStateRepository(tmp_path / "state.db")
    engine = WorkflowEngine(repository=repo)
    wf = order_workflow(services)

    state = await engine.execute(wf, {"order_id": "o-2", "amount": 30})

    assert state.status == WorkflowStatus.FAILED
    assert services.events[-2:] == ["refund", "release"]
    assert state.compensated == ["charge_card", "reserve_stock"]
    assert state.get("refunded") == 30
    assert "no courier available" in state.errors[0]

    stored = await repo.load(state.id)
    assert stored.status == WorkflowStatus.FAILED
    assert stored.compensations == []


@pytest.mark.asyncio
async def test_digital_orders_skip_shipping(tmp_path):
    services = FakeServices(fail_shipping=True)
    engine = WorkflowEngine()
    state = await engine.execute(
        order_workflow(services), {"order_id": "o-3", "amount": 5, "digital": True}
    )
    assert state.status == WorkflowStatus.COMPLETED
    assert "ship" not in services.events
    assert state.result("needs_shipping") is None
