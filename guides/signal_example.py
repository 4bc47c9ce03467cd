"""Waiting on an external event delivered as a signal."""

import asyncio

from sagaflow import WorkflowBuilder, WorkflowEngine

payment = (
    WorkflowBuilder("invoice")
    .step("send_invoice", lambda ctx, state: print("Invoice sent"))
    .await_signal("await_payment", "payment-received", timeout=30, result_key="payment")
    .step("issue_receipt", lambda ctx, state: print(f"Receipt for {state.get('payment')}"))
    .build()
)


async def main():
    engine = WorkflowEngine()
    engine.register(payment)
    state_id = await engine.start("invoice")

    while not engine.signals.waiting("payment-received"):
        await asyncio.sleep(0.01)
    delivered = await engine.send_signal("payment-received", {"amount": 99})
    print(f"Signal delivered to {delivered} waiter(s)")

    state = await engine.wait(state_id)
    print(f"{state_id} is {state.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
