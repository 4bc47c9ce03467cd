"""Tests for the broadcast signal manager."""

import asyncio

import pytest

from sagaflow import CancellationError, ExecutionContext, SignalManager


async def _until_waiting(signals: SignalManager, name: str, count: int) -> None:
    for _ in range(100):
        if signals.waiting(name) >= count:
            return
        await asyncio.sleep(0.001)
    raise AssertionError(f"expected {count} waiters on {name}")


@pytest.mark.asyncio
async def test_send_reaches_every_current_waiter():
    signals = SignalManager()
    first = asyncio.ensure_future(signals.wait("go"))
    second = asyncio.ensure_future(signals.wait("go"))
    await _until_waiting(signals, "go", 2)

    delivered = signals.send("go", 42)

    assert delivered == 2
    assert await first == 42
    assert await second == 42
    assert signals.waiting("go") == 0


@pytest.mark.asyncio
async def test_send_without_waiters_is_lost():
    signals = SignalManager()
    assert signals.send("go", 1) == 0

    late = asyncio.ensure_future(signals.wait("go", timeout=0.02))
    with pytest.raises(asyncio.TimeoutError):
        await late


@pytest.mark.asyncio
async def test_signals_are_keyed_by_name():
    signals = SignalManager()
    waiter = asyncio.ensure_future(signals.wait("a"))
    await _until_waiting(signals, "a", 1)

    assert signals.send("b", "wrong") == 0
    assert signals.send("a", "right") == 1
    assert await waiter == "right"


@pytest.mark.asyncio
async def test_wait_ends_on_cancellation():
    signals = SignalManager()
    ctx = ExecutionContext()
    waiter = asyncio.ensure_future(signals.wait("go", ctx))
    await _until_waiting(signals, "go", 1)

    ctx.cancel("abort")

    with pytest.raises(CancellationError, match="abort"):
        await waiter
    assert signals.waiting("go") == 0
