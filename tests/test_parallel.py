import asyncio

import pytest

from sagaflow import JoinPolicy, WorkflowBuilder, WorkflowEngine, WorkflowStatus, chain
from sagaflow.persistence import InMemoryStateRepository


def setter(key, value):
    def handler(ctx, state):
        state.set(key, value)
        return value

    return handler


@pytest.mark.asyncio
async def test_wait_all_runs_every_branch():
    wf = (
        WorkflowBuilder("fan")
        .parallel(
            "fetch",
            chain().step("inventory", setter("stock", 5)),
            chain().step("pricing", setter("price", 9.5)),
            chain().step("shipping", setter("eta", "2d")),
        )
        .step("after", lambda c, s: "done")
        .build()
    )
    state = await WorkflowEngine().execute(wf)

    assert state.status == WorkflowStatus.COMPLETED
    assert state.data == {"stock": 5, "price": 9.5, "eta": "2d"}
    assert state.result("fetch") == {"succeeded": 3, "failed": 0, "running": 0}
    assert state.result("after") == "done"


@pytest.mark.asyncio
async def test_wait_all_failure_stops_siblings_at_next_boundary():
    log = []

    async def fail_fast(ctx, state):
        raise RuntimeError("inventory down")

    async def slow(ctx, state):
        await asyncio.sleep(0.05)
        log.append("slow")

    def after_slow(ctx, state):
        log.append("after_slow")

    wf = (
        WorkflowBuilder("fan")
        .parallel(
            "fetch",
            chain().step("broken", fail_fast),
            chain().step("slow", slow).step("after_slow", after_slow),
        )
        .build()
    )
    state = await WorkflowEngine().execute(wf)

    assert state.status == WorkflowStatus.FAILED
    assert log == ["slow"]
    assert "slow" in state.step_results
    assert "after_slow" not in state.step_results
    assert "inventory down" in state.errors[-1]
    assert state.errors[-1].startswith("step 'fetch' failed")


@pytest.mark.asyncio
async def test_wait_any_returns_after_first_success():
    finished = asyncio.Event()

    async def slow(ctx, state):
        await asyncio.sleep(0.05)
        state.set("slow_done", True)
        finished.set()
        return "slow"

    engine = WorkflowEngine()
    wf = (
        WorkflowBuilder("race")
        .parallel(
            "race",
            chain().step("fast", setter("fast_done", True)),
            chain().step("slow", slow),
            join=JoinPolicy.WAIT_ANY,
        )
        .build()
    )
    state = await engine.execute(wf)

    assert state.status == WorkflowStatus.COMPLETED
    assert state.get("fast_done") is True
    assert state.get("slow_done") is None
    assert state.result("race") == {"succeeded": 1, "failed": 0, "running": 1}

    await asyncio.wait_for(finished.wait(), timeout=1)
    assert state.get("slow_done") is True
    assert state.result("slow") == "slow"
    await engine.shutdown()


@pytest.mark.asyncio
async def test_wait_n_fails_once_threshold_is_unreachable():
    def broken(ctx, state):
        raise RuntimeError("region down")

    wf = (
        WorkflowBuilder("quorum")
        .parallel(
            "replicate",
            chain().step("eu", broken),
            chain().step("us", broken),
            chain().step("ap", setter("ap", True)),
            wait_count=2,
        )
        .build()
    )
    state = await WorkflowEngine().execute(wf)
    assert state.status == WorkflowStatus.FAILED
    assert "region down" in state.errors[-1]


@pytest.mark.asyncio
async def test_wait_n_succeeds_with_quorum():
    def broken(ctx, state):
        raise RuntimeError("region down")

    wf = (
        WorkflowBuilder("quorum")
        .parallel(
            "replicate",
            chain().step("eu", setter("eu", True)),
            chain().step("us", broken),
            chain().step("ap", setter("ap", True)),
            join=JoinPolicy.WAIT_N,
            wait_count=2,
        )
        .build()
    )
    engine = WorkflowEngine()
    state = await engine.execute(wf)
    assert state.status == WorkflowStatus.COMPLETED
    assert state.get("eu") and state.get("ap")
    await engine.shutdown()


@pytest.mark.asyncio
async def test_failed_parallel_compensates_completed_branches():
    undone = []

    def broken(ctx, state):
        raise RuntimeError("nope")

    async def reserve(ctx, state):
        return "reserved"

    wf = (
        WorkflowBuilder("fan")
        .parallel(
            "book",
            chain().step("hotel", reserve, compensate=lambda c, s: undone.append("hotel")),
            chain().step("flight", broken),
        )
        .build()
    )
    state = await WorkflowEngine().execute(wf)
    assert state.status == WorkflowStatus.FAILED
    assert undone == ["hotel"]


@pytest.mark.asyncio
async def test_late_branch_failure_is_recorded_and_saved():
    async def slow(ctx, state):
        await asyncio.sleep(0.02)
        raise RuntimeError("late branch boom")

    repo = InMemoryStateRepository()
    engine = WorkflowEngine(repository=repo)
    wf = (
        WorkflowBuilder("race")
        .parallel(
            "race",
            chain().step("fast", setter("fast_done", True)),
            chain().step("slow", slow),
            join=JoinPolicy.WAIT_ANY,
        )
        .build()
    )
    state = await engine.execute(wf)
    assert state.status == WorkflowStatus.COMPLETED
    assert state.errors == []

    stored = None
    for _ in range(100):
        stored = await repo.load(state.id)
        if stored.errors:
            break
        await asyncio.sleep(0.01)

    assert len(state.errors) == 1
    assert "late branch boom" in state.errors[0]
    assert stored.status == WorkflowStatus.COMPLETED
    assert "late branch boom" in stored.errors[0]
    await engine.shutdown()


@pytest.mark.asyncio
async def test_late_branch_result_reaches_repository():
    async def slow(ctx, state):
        await asyncio.sleep(0.02)
        return "slow"

    repo = InMemoryStateRepository()
    engine = WorkflowEngine(repository=repo)
    wf = (
        WorkflowBuilder("race")
        .parallel(
            "race",
            chain().step("fast", setter("fast_done", True)),
            chain().step("slow", slow),
            join=JoinPolicy.WAIT_ANY,
        )
        .build()
    )
    state = await engine.execute(wf)
    assert (await repo.load(state.id)).result("slow") is None

    await engine.shutdown()
    stored = await repo.load(state.id)
    assert stored.result("slow") == "slow"
    assert stored.errors == []
