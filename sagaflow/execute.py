"""Step execution for sagaflow workflows."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from .constants import (
    LOOP_INDEX_KEY,
    LOOP_ITEM_KEY,
    LOOP_ITERATION_KEY,
    TIMEOUT_ACTION_KEY,
)
from .context import ExecutionContext
from .errors import CancellationError, StepError
from .state import ApprovalRecord, ApprovalStatus, WorkflowState, WorkflowStatus, utcnow
from .steps import (
    ActionStep,
    ApprovalStep,
    CheckpointStep,
    ConditionalStep,
    JoinPolicy,
    LoopStep,
    ParallelStep,
    SignalStep,
    SleepStep,
    Step,
    StepKind,
    SubWorkflowStep,
)
from .utils.handlers import call_handler

if TYPE_CHECKING:
    from .engine import WorkflowEngine
    from .workflow import Workflow

logger = logging.getLogger(__name__)


class StepOutcome(Enum):
    CONTINUE = "continue"
    PAUSED = "paused"


@dataclass
class RunScope:
    """What a single execute/resume pass shares across its steps."""

    workflow: "Workflow"
    journal_run_id: Optional[UUID] = None


Runner = Callable[[ExecutionContext, Any, WorkflowState, RunScope], Awaitable[StepOutcome]]


class StepExecutor:
    """Runs one step of any kind against a state.

    Dispatch goes through a single table keyed by :class:`StepKind`; the
    constructor refuses to build if a kind has no runner.
    """

    def __init__(self, engine: "WorkflowEngine") -> None:
        self._engine = engine
        self._runners: Dict[StepKind, Runner] = {
            StepKind.ACTION: self._run_action,
            StepKind.CONDITIONAL: self._run_conditional,
            StepKind.PARALLEL: self._run_parallel,
            StepKind.APPROVAL: self._run_approval,
            StepKind.SIGNAL: self._run_signal,
            StepKind.SLEEP: self._run_sleep,
            StepKind.CHECKPOINT: self._run_checkpoint,
            StepKind.LOOP: self._run_loop,
            StepKind.SUB_WORKFLOW: self._run_sub_workflow,
        }
        missing = set(StepKind) - set(self._runners)
        if missing:
            raise RuntimeError(f"no runner for step kinds: {sorted(k.value for k in missing)}")

    async def run(
        self, ctx: ExecutionContext, step: Step, state: WorkflowState, scope: RunScope
    ) -> StepOutcome:
        logger.debug(f"Running {step.kind.value} step '{step.name}' for {state.id}")
        return await self._runners[step.kind](ctx, step, state, scope)

    async def run_sequence(
        self,
        ctx: ExecutionContext,
        steps: Tuple[Step, ...],
        state: WorkflowState,
        scope: RunScope,
    ) -> None:
        """Run a nested branch in order, checking ``ctx`` between steps."""
        for step in steps:
            ctx.raise_if_cancelled()
            await self.run(ctx, step, state, scope)

    # ------------------------------------------------------------------
    # Action
    async def _run_action(
        self, ctx: ExecutionContext, step: ActionStep, state: WorkflowState, scope: RunScope
    ) -> StepOutcome:
        async def attempt(number: int) -> Any:
            record_id = await self._engine._journal_step_start(scope, step.name, number)
            try:
                if step.timeout is not None:
                    result = await asyncio.wait_for(
                        call_handler(step.handler, ctx, state), timeout=step.timeout
                    )
                else:
                    result = await call_handler(step.handler, ctx, state)
            except asyncio.TimeoutError:
                await self._engine._journal_step_error(record_id, "timed out")
                raise StepError(step.name, f"timed out after {step.timeout}s")
            except Exception as exc:
                await self._engine._journal_step_error(record_id, str(exc))
                raise
            await self._engine._journal_step_result(record_id, result)
            return result

        try:
            if step.retry is not None:
                result = await step.retry.run(ctx, attempt)
            else:
                result = await attempt(1)
        except (CancellationError, StepError):
            raise
        except Exception as exc:
            raise StepError(step.name, exc) from exc

        state.record_result(step.name, result)
        if step.compensation is not None:
            state.push_compensation(step.name, state.current_step)
        return StepOutcome.CONTINUE

    # ------------------------------------------------------------------
    # Conditional
    async def _run_conditional(
        self,
        ctx: ExecutionContext,
        step: ConditionalStep,
        state: WorkflowState,
        scope: RunScope,
    ) -> StepOutcome:
        label, branch = step.select(state)
        state.record_result(step.name, label)
        logger.debug(f"Conditional '{step.name}' took branch {label} for {state.id}")
        await self.run_sequence(ctx, branch, state, scope)
        return StepOutcome.CONTINUE

    # ------------------------------------------------------------------
    # Parallel
    async def _run_parallel(
        self, ctx: ExecutionContext, step: ParallelStep, state: WorkflowState, scope: RunScope
    ) -> StepOutcome:
        branch_ctx = ctx.child()
        pending = {
            asyncio.ensure_future(self.run_sequence(branch_ctx, branch, state, scope))
            for branch in step.parallel_branches
        }
        needed = step.required_successes
        successes = 0
        failures: List[BaseException] = []

        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    exc = task.exception()
                    if exc is None:
                        successes += 1
                    else:
                        failures.append(exc)

                if failures and step.join == JoinPolicy.WAIT_ALL:
                    # siblings stop at their next step boundary
                    branch_ctx.cancel(f"sibling branch of '{step.name}' failed")
                    continue
                if successes >= needed:
                    break
                if successes + len(pending) < needed:
                    branch_ctx.cancel(f"parallel step '{step.name}' cannot reach {needed}")
                    break
        except asyncio.CancelledError:
            branch_ctx.cancel("parallel step interrupted")
            for task in pending:
                task.cancel()
            raise

        for task in pending:
            self._engine._track_background(task, state)

        state.record_result(
            step.name,
            {"succeeded": successes, "failed": len(failures), "running": len(pending)},
        )

        if successes >= needed:
            return StepOutcome.CONTINUE
        ctx.raise_if_cancelled()
        cause = next(
            (f for f in failures if not isinstance(f, CancellationError)),
            failures[0] if failures else None,
        )
        raise StepError(step.name, cause or "no branch completed")

    # ------------------------------------------------------------------
    # Approval gate
    async def _run_approval(
        self, ctx: ExecutionContext, step: ApprovalStep, state: WorkflowState, scope: RunScope
    ) -> StepOutcome:
        timeout = step.timeout
        if timeout is None:
            timeout = self._engine.config.engine.default_approval_timeout

        with state.locked():
            record = state.approvals.get(step.name)
            if record is None:
                requested_at = utcnow()
                record = ApprovalRecord(
                    step_name=step.name,
                    approvers=list(step.approvers),
                    requested_at=requested_at,
                    expires_at=(
                        requested_at + timedelta(seconds=timeout)
                        if timeout is not None
                        else None
                    ),
                )
                state.approvals[step.name] = record
            elif (
                record.status == ApprovalStatus.PENDING
                and record.expires_at is not None
                and utcnow() >= record.expires_at
            ):
                record.status = ApprovalStatus.REJECTED
                record.reason = "approval timed out"

            if record.status == ApprovalStatus.APPROVED:
                state.step_results[step.name] = {"approved_by": list(record.approved_by)}
                return StepOutcome.CONTINUE
            if record.status == ApprovalStatus.REJECTED:
                who = f" by {record.rejected_by}" if record.rejected_by else ""
                raise StepError(step.name, f"approval rejected{who}: {record.reason}")

            # votes must be accepted as soon as the instance reads as paused
            self._engine.approvals.request(
                state.id,
                step.name,
                record.approvers,
                approved_by=record.approved_by,
                requested_at=record.requested_at,
                expires_at=record.expires_at,
            )
            state.status = WorkflowStatus.PAUSED
        return StepOutcome.PAUSED

    # ------------------------------------------------------------------
    # Signal
    async def _run_signal(
        self, ctx: ExecutionContext, step: SignalStep, state: WorkflowState, scope: RunScope
    ) -> StepOutcome:
        state.set_status(WorkflowStatus.PAUSED)
        try:
            data = await self._engine.signals.wait(step.signal, ctx, timeout=step.timeout)
        except asyncio.TimeoutError as exc:
            if step.on_timeout is not None:
                state.set(TIMEOUT_ACTION_KEY, step.on_timeout)
            raise StepError(step.name, exc) from exc
        finally:
            with state.locked():
                if state.status == WorkflowStatus.PAUSED:
                    state.status = WorkflowStatus.RUNNING

        state.record_result(step.name, data)
        state.set(step.result_key or step.name, data)
        return StepOutcome.CONTINUE

    # ------------------------------------------------------------------
    # Sleep / checkpoint
    async def _run_sleep(
        self, ctx: ExecutionContext, step: SleepStep, state: WorkflowState, scope: RunScope
    ) -> StepOutcome:
        await ctx.sleep(step.duration)
        return StepOutcome.CONTINUE

    async def _run_checkpoint(
        self,
        ctx: ExecutionContext,
        step: CheckpointStep,
        state: WorkflowState,
        scope: RunScope,
    ) -> StepOutcome:
        with state.locked():
            state.checkpoints[step.name] = state.current_step
        return StepOutcome.CONTINUE

    # ------------------------------------------------------------------
    # Loop
    async def _run_loop(
        self, ctx: ExecutionContext, step: LoopStep, state: WorkflowState, scope: RunScope
    ) -> StepOutcome:
        iterations = 0

        def exhausted() -> bool:
            return step.max_iterations is not None and iterations >= step.max_iterations

        if step.for_each is not None:
            items = state.get(step.for_each)
            if not isinstance(items, list):
                raise StepError(step.name, f"for_each key '{step.for_each}' is not a list")
            for position, item in enumerate(items):
                if exhausted():
                    break
                ctx.raise_if_cancelled()
                state.set(LOOP_INDEX_KEY, position)
                state.set(LOOP_ITEM_KEY, item)
                await self.run_sequence(ctx, step.body, state, scope)
                iterations += 1
                if step.break_when is not None and step.break_when(state):
                    break
        else:
            while not exhausted():
                if step.while_condition is not None and not step.while_condition(state):
                    break
                ctx.raise_if_cancelled()
                state.set(LOOP_ITERATION_KEY, iterations)
                await self.run_sequence(ctx, step.body, state, scope)
                iterations += 1
                if step.break_when is not None and step.break_when(state):
                    break

        state.record_result(step.name, {"iterations": iterations})
        return StepOutcome.CONTINUE

    # ------------------------------------------------------------------
    # Sub-workflow
    async def _run_sub_workflow(
        self,
        ctx: ExecutionContext,
        step: SubWorkflowStep,
        state: WorkflowState,
        scope: RunScope,
    ) -> StepOutcome:
        child = WorkflowState(
            id=f"{state.id}-{step.name}",
            workflow_id=step.workflow.name,
            data=dict(step.input),
        )
        result = await self._engine.execute_with_state(step.workflow, child, ctx)
        state.record_result(step.name, dict(result.step_results))
        if result.status != WorkflowStatus.COMPLETED:
            detail = result.errors[-1] if result.errors else result.status.value
            raise StepError(
                step.name, f"sub-workflow '{step.workflow.name}' ended {result.status.value}: {detail}"
            )
        return StepOutcome.CONTINUE
