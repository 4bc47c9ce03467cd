import pytest

from sagaflow import (
    DefinitionError,
    PersistenceError,
    WorkflowBuilder,
    WorkflowEngine,
    WorkflowError,
    WorkflowState,
    WorkflowStatus,
)
from sagaflow.config import EngineConfig, SagaflowConfig
from sagaflow.persistence import InMemoryStateRepository, SQLiteStateRepository


class RecordingRepository(InMemoryStateRepository):
    def __init__(self):
        super().__init__()
        self.saved_steps = []

    async def save(self, state):
        self.saved_steps.append((state.current_step, state.status))
        await super().save(state)


class BrokenRepository(InMemoryStateRepository):
    async def save(self, state):
        raise OSError("disk full")


def counting(counts, name, fail_until=0):
    def handler(ctx, state):
        counts[name] = counts.get(name, 0) + 1
        if counts[name] <= fail_until:
            raise RuntimeError(f"{name} failed")
        return counts[name]

    return handler


def three_steps(counts, c_fail_until=0):
    return (
        WorkflowBuilder("three")
        .step("a", counting(counts, "a"))
        .step("b", counting(counts, "b"), compensate=lambda ctx, s: None)
        .step("c", counting(counts, "c", fail_until=c_fail_until))
        .build()
    )


@pytest.mark.asyncio
async def test_state_is_checkpointed_before_each_step():
    repo = RecordingRepository()
    engine = WorkflowEngine(repository=repo)
    state = await engine.execute(three_steps({}))

    assert state.status == WorkflowStatus.COMPLETED
    steps_before_running = [step for step, status in repo.saved_steps if status == WorkflowStatus.RUNNING]
    assert steps_before_running == [0, 1, 2]
    assert repo.saved_steps[-1] == (2, WorkflowStatus.COMPLETED)
    assert (await repo.load(state.id)).status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_resume_continues_at_recorded_step():
    counts = {}
    repo = InMemoryStateRepository()
    engine = WorkflowEngine(repository=repo)
    wf = three_steps(counts)
    engine.register(wf)

    # crash after step "a": the checkpoint preceding "b" was written
    crashed = WorkflowState(
        id="three-1",
        workflow_id="three",
        status=WorkflowStatus.RUNNING,
        current_step=1,
        step_results={"a": 1},
        checkpoints={"a": 0, "b": 1},
    )
    await repo.save(crashed)

    await engine.resume("three-1")
    state = await engine.wait("three-1", timeout=1)

    assert state.status == WorkflowStatus.COMPLETED
    assert counts == {"b": 1, "c": 1}


@pytest.mark.asyncio
async def test_resume_requires_repository_and_state():
    engine = WorkflowEngine()
    with pytest.raises(PersistenceError, match="not configured"):
        await engine.resume("anything")

    engine = WorkflowEngine(repository=InMemoryStateRepository())
    with pytest.raises(PersistenceError, match="state not found"):
        await engine.resume("missing")


@pytest.mark.asyncio
async def test_resume_unknown_workflow():
    repo = InMemoryStateRepository()
    await repo.save(WorkflowState(id="ghost-1", workflow_id="ghost"))
    engine = WorkflowEngine(repository=repo)
    with pytest.raises(DefinitionError):
        await engine.resume("ghost-1")


@pytest.mark.asyncio
async def test_completed_workflow_cannot_be_resumed():
    repo = InMemoryStateRepository()
    engine = WorkflowEngine(repository=repo)
    wf = three_steps({})
    engine.register(wf)
    state = await engine.execute(wf)

    with pytest.raises(WorkflowError, match="cannot be resumed"):
        await engine.resume(state.id)


@pytest.mark.asyncio
async def test_resume_from_checkpoint_reruns_from_there(tmp_path):
    counts = {}
    repo = SQLiteStateRepository(tmp_path / "wf.db")
    engine = WorkflowEngine(repository=repo)
    wf = three_steps(counts, c_fail_until=1)
    engine.register(wf)

    failed = await engine.execute(wf)
    assert failed.status == WorkflowStatus.FAILED
    assert failed.compensated == ["b"]

    # a fresh engine, as after a process restart
    engine = WorkflowEngine(repository=SQLiteStateRepository(tmp_path / "wf.db"))
    engine.register(wf)
    await engine.resume_from_checkpoint(failed.id, "b")
    state = await engine.wait(failed.id, timeout=1)

    assert state.status == WorkflowStatus.COMPLETED
    assert counts == {"a": 1, "b": 2, "c": 2}
    assert [c.step_name for c in state.compensations] == ["b"]


@pytest.mark.asyncio
async def test_resume_from_unknown_checkpoint():
    repo = InMemoryStateRepository()
    engine = WorkflowEngine(repository=repo)
    wf = three_steps({}, c_fail_until=1)
    engine.register(wf)
    state = await engine.execute(wf)

    with pytest.raises(DefinitionError, match="checkpoint not found: nowhere"):
        await engine.resume_from_checkpoint(state.id, "nowhere")


@pytest.mark.asyncio
async def test_save_failures_are_recorded_by_default():
    engine = WorkflowEngine(repository=BrokenRepository())
    state = await engine.execute(three_steps({}))
    assert state.status == WorkflowStatus.COMPLETED
    assert any("disk full" in e for e in state.errors)


@pytest.mark.asyncio
async def test_save_failures_can_fail_the_run():
    config = SagaflowConfig(engine=EngineConfig(fail_on_save_error=True))
    counts = {}
    engine = WorkflowEngine(repository=BrokenRepository(), config=config)
    state = await engine.execute(three_steps(counts))
    assert state.status == WorkflowStatus.FAILED
    assert counts == {}
    assert "disk full" in state.errors[-1]
