"""Tests for cron expressions and the workflow scheduler."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from sagaflow import (
    CronScheduler,
    DefinitionError,
    WorkflowBuilder,
    WorkflowEngine,
    WorkflowStatus,
    parse_cron,
)
from sagaflow.cron import (
    at,
    daily,
    every,
    hourly,
    monthly,
    parse_duration,
    weekdays,
    weekends,
    weekly,
)
from sagaflow.persistence import InMemoryStateRepository

# Friday
FRIDAY_10AM = datetime(2024, 3, 8, 10, 0, tzinfo=timezone.utc)


def report_workflow():
    return WorkflowBuilder("report").step("build", lambda c, s: "built").build()


@pytest.mark.parametrize(
    "expression",
    ["*/15 * * * *", "0 9 * * 1-5", "0 0 1,15 * *", "@daily", "@every 5m", "@every 1h30m"],
)
def test_parse_accepts_supported_expressions(expression):
    assert parse_cron(expression).expression == expression


@pytest.mark.parametrize(
    "expression",
    ["* * * *", "0 0 * * * *", "61 * * * *", "0 25 * * *", "@every nope", "@every 0s", ""],
)
def test_parse_rejects_invalid_expressions(expression):
    with pytest.raises(DefinitionError):
        parse_cron(expression)


def test_parse_duration():
    assert parse_duration("90s") == timedelta(seconds=90)
    assert parse_duration("1h30m") == timedelta(minutes=90)
    assert parse_duration("250ms") == timedelta(milliseconds=250)
    with pytest.raises(DefinitionError):
        parse_duration("5 minutes")


def test_next_run_times():
    assert parse_cron("0 9 * * 1-5").next(FRIDAY_10AM) == datetime(
        2024, 3, 11, 9, 0, tzinfo=timezone.utc
    )
    assert parse_cron("@daily").next(FRIDAY_10AM) == datetime(
        2024, 3, 9, 0, 0, tzinfo=timezone.utc
    )
    assert parse_cron("*/15 * * * *").next(FRIDAY_10AM + timedelta(minutes=7)) == datetime(
        2024, 3, 8, 10, 15, tzinfo=timezone.utc
    )
    assert parse_cron("@hourly").next(FRIDAY_10AM) == datetime(
        2024, 3, 8, 11, 0, tzinfo=timezone.utc
    )
    assert parse_cron("@every 90s").next(FRIDAY_10AM) == FRIDAY_10AM + timedelta(seconds=90)


def test_expression_helpers():
    assert at(6, 30) == "30 6 * * *"
    assert weekdays(9) == "0 9 * * 1-5"
    assert weekends(10, 15) == "15 10 * * 0,6"
    assert every(timedelta(minutes=5)) == "@every 300s"
    assert every(0.5) == "@every 0.5s"
    assert (daily(), hourly(), weekly(), monthly()) == ("@daily", "@hourly", "@weekly", "@monthly")
    for expression in (at(6, 30), weekdays(9), weekends(10), every(0.5), weekly(), monthly()):
        parse_cron(expression)


def test_schedule_management():
    cron = CronScheduler(WorkflowEngine())
    schedule = cron.add("nightly", "report", daily(), now=FRIDAY_10AM)
    assert schedule.enabled
    assert schedule.next_run == datetime(2024, 3, 9, tzinfo=timezone.utc)

    with pytest.raises(DefinitionError):
        cron.add("broken", "report", "not a cron")
    assert [s.id for s in cron.schedules()] == ["nightly"]

    assert cron.disable("nightly")
    assert cron.get("nightly").enabled is False
    assert cron.enable("nightly", now=FRIDAY_10AM + timedelta(days=1, hours=1))
    assert cron.get("nightly").next_run == datetime(2024, 3, 10, tzinfo=timezone.utc)

    assert cron.remove("nightly")
    assert not cron.remove("nightly")
    assert not cron.disable("nightly")
    assert cron.schedules() == []


@pytest.mark.asyncio
async def test_run_pending_starts_due_workflows():
    engine = WorkflowEngine(repository=InMemoryStateRepository())
    engine.register(report_workflow())
    cron = CronScheduler(engine)
    cron.add("nightly", "report", daily(), {"region": "eu"}, now=FRIDAY_10AM)

    assert await cron.run_pending(now=FRIDAY_10AM + timedelta(hours=1)) == []

    due = datetime(2024, 3, 9, tzinfo=timezone.utc)
    started = await cron.run_pending(now=due)
    assert len(started) == 1
    state = await engine.wait(started[0], timeout=1)
    assert state.status == WorkflowStatus.COMPLETED
    assert state.get("region") == "eu"
    assert state.get("_cron_schedule_id") == "nightly"
    assert state.get("_cron_triggered_at") == due.isoformat()

    schedule = cron.get("nightly")
    assert schedule.last_run == due
    assert schedule.next_run == due + timedelta(days=1)
    assert await cron.run_pending(now=due) == []


@pytest.mark.asyncio
async def test_disabled_and_unknown_schedules_start_nothing():
    repo = InMemoryStateRepository()
    engine = WorkflowEngine(repository=repo)
    engine.register(report_workflow())
    cron = CronScheduler(engine)
    cron.add("paused", "report", hourly(), now=FRIDAY_10AM)
    cron.add("ghost", "missing", hourly(), now=FRIDAY_10AM)
    cron.disable("paused")

    assert await cron.run_pending(now=FRIDAY_10AM + timedelta(hours=2)) == []
    assert await repo.list_states() == []
    assert cron.get("ghost").next_run == FRIDAY_10AM + timedelta(hours=3)
    assert cron.get("paused").last_run is None


@pytest.mark.asyncio
async def test_scheduler_task_starts_workflows():
    repo = InMemoryStateRepository()
    engine = WorkflowEngine(repository=repo)
    engine.register(report_workflow())

    async with CronScheduler(engine, tick_interval=0.01) as cron:
        assert cron.running
        cron.add("fast", "report", every(0.02))
        for _ in range(200):
            if await repo.list_states():
                break
            await asyncio.sleep(0.01)

    assert not cron.running
    await engine.shutdown()
    states = await repo.list_states()
    assert states
    assert all(s.get("_cron_schedule_id") == "fast" for s in states)
