import os
import uuid

import pytest

from sagaflow import WorkflowState, WorkflowStatus
from sagaflow.persistence import RedisStateRepository


def _get_url() -> str:
    return os.getenv("TEST_REDIS_URL", "redis://localhost:6379/0")


@pytest.mark.asyncio
async def test_redis_repository_crud():
    prefix = f"sagaflow-test-{uuid.uuid4().hex[:8]}"
    try:
        repo = RedisStateRepository(url=_get_url(), key_prefix=prefix, ttl_seconds=60)
        # attempt connection
        await repo.connect()
    except Exception:
        pytest.skip("Redis server not available")

    state_id = f"order-{uuid.uuid4()}"
    state = WorkflowState(id=state_id, workflow_id="order", data={"foo": "bar"})
    state.record_result("charge", {"amount": 10})
    state.push_compensation("charge", 0)
    await repo.save(state)

    state.set_status(WorkflowStatus.PAUSED)
    await repo.save(state)

    loaded = await repo.load(state_id)
    assert loaded is not None
    assert loaded.status == WorkflowStatus.PAUSED
    assert loaded.data == {"foo": "bar"}
    assert loaded.result("charge") == {"amount": 10}
    assert [c.step_name for c in loaded.compensations] == ["charge"]
    assert [s.id for s in await repo.list_states()] == [state_id]
    assert 0 < await repo._redis.ttl(f"{prefix}:{state_id}") <= 60

    await repo.delete(state_id)
    assert await repo.load(state_id) is None
    await repo.disconnect()
