"""Order saga: reserve, charge and ship, rolling back when shipping fails.

Run with ``python guides/order_saga_example.py`` or through the CLI::

    sagaflow run guides/order_saga_example.py:build_order --input '{"order_id": "o-1", "amount": 25}'
"""

import asyncio
import logging
import random

from sagaflow import RetryPolicy, WorkflowBuilder, WorkflowEngine, chain, get_repository, load_config


def reserve_stock(ctx, state):
    print(f"Reserving stock for {state.get('order_id')}")
    return {"reservation": "r-42"}


def release_stock(ctx, state):
    print("Releasing reserved stock")


async def charge_card(ctx, state):
    await asyncio.sleep(0.1)
    print(f"Charging {state.get('amount')}")
    return {"transaction": "tx-1"}


async def refund_card(ctx, state):
    print(f"Refunding {state.get('amount')}")


def send_email(ctx, state):
    print("Emailing confirmation")


def send_sms(ctx, state):
    print("Texting confirmation")


def ship(ctx, state):
    if random.random() < 0.5:
        raise RuntimeError("no courier available")
    return {"tracking": "trk-1"}


def build_order():
    return (
        WorkflowBuilder("order")
        .step("reserve_stock", reserve_stock, compensate=release_stock)
        .step("charge_card", charge_card, compensate=refund_card)
        .retry(RetryPolicy.from_config(load_config().retry))
        .parallel(
            "notify",
            chain().step("email", send_email),
            chain().step("sms", send_sms),
        )
        .if_(
            "physical_goods",
            lambda state: not state.get("digital", False),
            then=chain().step("ship", ship),
        )
    )


async def main():
    logging.basicConfig(level=logging.INFO)
    engine = WorkflowEngine(repository=get_repository())
    state = await engine.execute(build_order().build(), {"order_id": "o-1", "amount": 25})
    print(f"Workflow {state.id} finished as {state.status.value}")
    if state.compensated:
        print(f"Rolled back: {', '.join(state.compensated)}")


if __name__ == "__main__":
    asyncio.run(main())
