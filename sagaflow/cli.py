"""Command line interface for running and inspecting sagaflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import typer

from sagaflow import WorkflowEngine, get_repository, load_config
from sagaflow.cli_utils.workflow import load_workflow
from sagaflow.errors import WorkflowError
from sagaflow.journal import ExecutionJournal
from sagaflow.state import WorkflowState, WorkflowStatus

app = typer.Typer(help="CLI for sagaflow workflows")

# Command groups
state_app = typer.Typer(help="Commands for inspecting persisted workflow state")

app.add_typer(state_app, name="state")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override the configured log level"
    ),
) -> None:
    """Sagaflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_input(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON input: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Input must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _build_engine(target: str) -> WorkflowEngine:
    try:
        workflow = load_workflow(target)
    except WorkflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    config = load_config()
    journal = ExecutionJournal(config.journal_url) if config.journal_url else None
    engine = WorkflowEngine(repository=get_repository(), config=config, journal=journal)
    engine.register(workflow)
    return engine


async def _prepare(engine: WorkflowEngine) -> None:
    if engine.journal is not None:
        await engine.journal.init_db()


def _report(state: Optional[WorkflowState]) -> None:
    if state is None:
        typer.echo("Workflow state not found")
        raise typer.Exit(code=1)
    colour = {
        WorkflowStatus.COMPLETED: typer.colors.GREEN,
        WorkflowStatus.FAILED: typer.colors.RED,
        WorkflowStatus.PAUSED: typer.colors.YELLOW,
    }.get(state.status)
    typer.secho(f"Workflow {state.id}: {state.status.value}", fg=colour)
    for error in state.errors:
        typer.echo(f"  error: {error}")
    if state.compensated:
        typer.echo(f"  compensated: {', '.join(state.compensated)}")
    if state.status == WorkflowStatus.FAILED:
        raise typer.Exit(code=1)


def _fail(exc: Exception) -> None:
    typer.secho(str(exc), fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.command("run")
def run(
    target: str,
    input: Optional[str] = typer.Option(None, "--input", help="JSON object used as initial data"),
) -> None:
    """
    Execute a workflow until it completes, fails or pauses.

    Args:
        target: Workflow location as ``module:attr`` or ``path/to/file.py:attr``
        input: Optional JSON object used as the initial data bag

    Example:
        sagaflow run orders.flows:order_workflow --input '{"order_id": "o-1"}'
        sagaflow run ./flows.py:build_order
    """
    data = _parse_input(input)
    engine = _build_engine(target)
    workflow_name = engine.workflows()[0]

    async def _run() -> WorkflowState:
        await _prepare(engine)
        async with engine:
            return await engine.execute(engine.get_workflow(workflow_name), data)

    _report(asyncio.run(_run()))


@app.command("resume")
def resume(
    target: str,
    state_id: str,
    checkpoint: Optional[str] = typer.Option(
        None, "--checkpoint", help="Rewind to this checkpoint before resuming"
    ),
) -> None:
    """
    Resume a persisted workflow instance.

    Example:
        sagaflow resume orders.flows:order_workflow order-1700000000000000000
        sagaflow resume ./flows.py:build_order order-17000 --checkpoint charge
    """
    engine = _build_engine(target)

    async def _resume() -> Optional[WorkflowState]:
        await _prepare(engine)
        async with engine:
            if checkpoint:
                await engine.resume_from_checkpoint(state_id, checkpoint)
            else:
                await engine.resume(state_id)
            return await engine.wait(state_id)

    try:
        state = asyncio.run(_resume())
    except WorkflowError as exc:
        _fail(exc)
    _report(state)


async def _decide(engine: WorkflowEngine, state_id: str, vote) -> Optional[WorkflowState]:
    await _prepare(engine)
    async with engine:
        await engine.resume(state_id)
        await engine.wait(state_id)
        await vote()
        return await engine.wait(state_id)


@app.command("approve")
def approve(target: str, state_id: str, approver: str) -> None:
    """
    Cast an approval vote for a workflow paused at an approval gate.

    The instance is resumed in-process, the vote recorded, and the command
    waits for the run to settle again.

    Example:
        sagaflow approve orders.flows:order_workflow order-17000 manager
    """
    engine = _build_engine(target)
    try:
        state = asyncio.run(
            _decide(engine, state_id, lambda: engine.approve(state_id, approver))
        )
    except WorkflowError as exc:
        _fail(exc)
    _report(state)


@app.command("reject")
def reject(
    target: str,
    state_id: str,
    approver: str,
    reason: str = typer.Option("", "--reason", help="Reason recorded with the rejection"),
) -> None:
    """
    Reject a pending approval; the workflow fails and compensates.

    Example:
        sagaflow reject orders.flows:order_workflow order-17000 manager --reason "too expensive"
    """
    engine = _build_engine(target)
    try:
        state = asyncio.run(
            _decide(engine, state_id, lambda: engine.reject(state_id, approver, reason))
        )
    except WorkflowError as exc:
        _fail(exc)
    _report(state)


@state_app.command("list")
def state_list() -> None:
    """
    List persisted workflow instances with their status.

    Example:
        sagaflow state list
        # Output: order-1700000000000000000    order    completed
    """
    repo = get_repository()
    states = asyncio.run(repo.list_states())
    if not states:
        typer.echo("No workflow states found")
        return
    for state in states:
        typer.echo(f"{state.id}\t{state.workflow_id}\t{state.status.value}")


@state_app.command("show")
def state_show(state_id: str) -> None:
    """
    Show the persisted state of one workflow instance.

    Example:
        sagaflow state show order-1700000000000000000
    """
    repo = get_repository()
    state = asyncio.run(repo.load(state_id))
    if state is None:
        typer.echo("Workflow state not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {state.id} ({state.workflow_id}): {state.status.value}")
    typer.echo(f"Current step: {state.current_step}")
    if state.data:
        typer.echo(f"Data: {json.dumps(state.data, default=str)}")
    for name, result in state.step_results.items():
        typer.echo(f"- {name}: {json.dumps(result, default=str)}")
    if state.checkpoints:
        typer.echo(
            "Checkpoints: "
            + ", ".join(f"{name}@{index}" for name, index in state.checkpoints.items())
        )
    for record in state.approvals.values():
        typer.echo(
            f"Approval {record.step_name}: {record.status.value}"
            f" (approved by: {', '.join(record.approved_by) or 'nobody'})"
        )
    for error in state.errors:
        typer.echo(f"Error: {error}")


@state_app.command("delete")
def state_delete(state_id: str) -> None:
    """Delete a persisted workflow instance."""
    repo = get_repository()
    asyncio.run(repo.delete(state_id))
    typer.echo(f"Deleted {state_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
