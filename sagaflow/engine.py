"""Workflow engine: registry, scheduler and owner of signals and approvals."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import UUID

from .approvals import ApprovalManager, ApprovalRequest
from .config import SagaflowConfig
from .context import ExecutionContext
from .errors import (
    ApprovalError,
    CancellationError,
    CompensationError,
    DefinitionError,
    PersistenceError,
    StepError,
    WorkflowError,
)
from .execute import RunScope, StepExecutor, StepOutcome
from .journal import ExecutionJournal
from .persistence import StateRepository
from .signals import SignalManager
from .state import ApprovalStatus, WorkflowState, WorkflowStatus, utcnow
from .steps import StepKind
from .utils.handlers import call_handler
from .workflow import Workflow

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Registers workflows and drives their instances.

    Each instance runs as its own asyncio task. Two lock domains exist: the
    engine lock below guards the registry and the running-instance index, and
    every :class:`WorkflowState` carries its own lock for field mutations.
    Neither is held across an ``await``.

    Args:
        repository: Optional durable store. Without it the engine still runs
            workflows but ``resume`` is unavailable.
        config: Engine settings; defaults are used when omitted.
        journal: Optional execution journal recording every action attempt.
    """

    def __init__(
        self,
        repository: Optional[StateRepository] = None,
        config: Optional[SagaflowConfig] = None,
        journal: Optional[ExecutionJournal] = None,
    ) -> None:
        self.config = config or SagaflowConfig()
        self.repository = repository
        self.journal = journal
        self.signals = SignalManager()
        self.approvals = ApprovalManager()
        self._executor = StepExecutor(self)

        self._lock = threading.RLock()
        self._workflows: Dict[str, Workflow] = {}
        self._running: Dict[str, WorkflowState] = {}
        self._contexts: Dict[str, ExecutionContext] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._last_id_ns = 0
        self._sweeper: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "WorkflowEngine":
        if self.config.engine.approval_sweep_interval:
            self.start_sweeper()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Registry
    def register(self, workflow: Workflow) -> None:
        """Add ``workflow`` to the registry; a later registration wins."""
        if not isinstance(workflow, Workflow):
            raise DefinitionError("register() expects a built Workflow")
        with self._lock:
            self._workflows[workflow.name] = workflow
        logger.info(f"Registered workflow '{workflow.name}' v{workflow.version}")

    def get_workflow(self, name: str) -> Workflow:
        with self._lock:
            workflow = self._workflows.get(name)
        if workflow is None:
            raise DefinitionError(f"workflow not found: {name}")
        return workflow

    def workflows(self) -> List[str]:
        with self._lock:
            return sorted(self._workflows)

    # ------------------------------------------------------------------
    # Starting and running
    def _new_state_id(self, name: str) -> str:
        with self._lock:
            stamp = max(time.time_ns(), self._last_id_ns + 1)
            self._last_id_ns = stamp
        return f"{name}-{stamp}"

    def _new_state(self, workflow: Workflow, input: Optional[Dict[str, Any]]) -> WorkflowState:
        return WorkflowState(
            id=self._new_state_id(workflow.name),
            workflow_id=workflow.name,
            status=WorkflowStatus.RUNNING,
            data=dict(input or {}),
        )

    async def start(
        self,
        name: str,
        input: Optional[Dict[str, Any]] = None,
        ctx: Optional[ExecutionContext] = None,
    ) -> str:
        """Start ``name`` in the background and return the new state id.

        Raises:
            DefinitionError: If ``name`` is not registered.
        """
        workflow = self.get_workflow(name)
        state = self._new_state(workflow, input)
        await self._save(state)
        self._launch(workflow, state, ctx)
        logger.info(f"Started workflow '{name}' as {state.id}")
        return state.id

    async def execute(
        self,
        workflow: Workflow,
        input: Optional[Dict[str, Any]] = None,
        ctx: Optional[ExecutionContext] = None,
    ) -> WorkflowState:
        """Run ``workflow`` inline until it completes, fails or pauses."""
        return await self.execute_with_state(workflow, self._new_state(workflow, input), ctx)

    def _launch(
        self,
        workflow: Workflow,
        state: WorkflowState,
        ctx: Optional[ExecutionContext] = None,
    ) -> asyncio.Task:
        ctx = ctx or ExecutionContext()
        with self._lock:
            self._running[state.id] = state
            self._contexts[state.id] = ctx
        task = asyncio.get_running_loop().create_task(
            self.execute_with_state(workflow, state, ctx), name=f"sagaflow:{state.id}"
        )
        with self._lock:
            self._tasks[state.id] = task
        task.add_done_callback(partial(self._forget_task, state.id))
        return task

    def _forget_task(self, state_id: str, task: asyncio.Task) -> None:
        with self._lock:
            if self._tasks.get(state_id) is task:
                del self._tasks[state_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Workflow task for {state_id} crashed: {task.exception()!r}"
            )

    def _track_background(self, task: asyncio.Task, state: WorkflowState) -> None:
        """Keep a reference to branch tasks left running by WaitAny/WaitN.

        A late failure is recorded on the state. Once the run itself is no
        longer executing, the state is saved again so late results and
        errors reach the repository.
        """
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(partial(self._settle_background, state))

    def _settle_background(self, state: WorkflowState, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, CancellationError):
            state.record_error(f"late branch: {exc}")
            logger.warning(f"Background branch of {state.id} failed: {exc}")
        if self.repository is None or state.status in (
            WorkflowStatus.RUNNING,
            WorkflowStatus.COMPENSATING,
        ):
            return
        save = asyncio.get_running_loop().create_task(self._save(state, final=True))
        self._background.add(save)
        save.add_done_callback(self._background.discard)

    async def execute_with_state(
        self,
        workflow: Workflow,
        state: WorkflowState,
        ctx: Optional[ExecutionContext] = None,
    ) -> WorkflowState:
        """Drive ``state`` through ``workflow`` from ``state.current_step``.

        Shared by start, execute and every resume path. Returns the state once
        it is terminal or paused; run failures are reported through
        ``status`` and ``errors`` rather than raised.
        """
        ctx = ctx or ExecutionContext()
        with self._lock:
            self._running[state.id] = state
            self._contexts[state.id] = ctx
        state.set_status(WorkflowStatus.RUNNING)
        scope = RunScope(workflow=workflow)
        scope.journal_run_id = await self._journal_run_start(state)
        logger.info(
            f"Running workflow '{workflow.name}' ({state.id}) from step {state.current_step}"
        )

        error: Optional[BaseException] = None
        rollback = False
        paused = False
        try:
            paused = await self._execute_steps(ctx, workflow, state, scope)
        except CancellationError as exc:
            error, rollback = await self._on_cancelled(ctx, workflow, state, exc)
        except Exception as exc:
            error, rollback = exc, True

        if paused:
            await self._save(state, final=True)
            await self._journal_run_finish(scope, WorkflowStatus.PAUSED.value)
            self._log_pause(workflow, state)
            return state

        with state.locked():
            state.completed_at = utcnow()
            if error is None:
                state.status = WorkflowStatus.COMPLETED
            else:
                state.status = WorkflowStatus.FAILED
                state.errors.append(str(error))

        if error is not None and rollback and state.compensations:
            state.set_status(WorkflowStatus.COMPENSATING)
            await self._run_compensations(workflow, state)
            state.set_status(WorkflowStatus.FAILED)

        await self._save(state, final=True)
        with self._lock:
            self._running.pop(state.id, None)
            self._contexts.pop(state.id, None)
        await self._journal_run_finish(scope, state.status.value)

        if error is None:
            logger.info(f"Workflow '{workflow.name}' ({state.id}) completed")
        else:
            logger.info(f"Workflow '{workflow.name}' ({state.id}) failed: {error}")
        await self._notify_complete(workflow, ctx, state)
        return state

    async def _execute_steps(
        self,
        ctx: ExecutionContext,
        workflow: Workflow,
        state: WorkflowState,
        scope: RunScope,
    ) -> bool:
        """Run top-level steps in order. Returns ``True`` when the run paused."""
        for index in range(state.current_step, len(workflow.steps)):
            ctx.raise_if_cancelled()
            step = workflow.steps[index]
            with state.locked():
                state.current_step = index
                state.checkpoints[step.name] = index

            await self._save(state)

            try:
                outcome = await self._executor.run(ctx, step, state, scope)
            except CancellationError:
                raise
            except Exception as exc:
                error = exc if isinstance(exc, StepError) else StepError(step.name, exc)
                escalated = await self._handle_step_error(ctx, workflow, state, error)
                if escalated is not None:
                    raise escalated
                continue

            if outcome is StepOutcome.PAUSED:
                return True
        return False

    async def _handle_step_error(
        self,
        ctx: ExecutionContext,
        workflow: Workflow,
        state: WorkflowState,
        error: Exception,
    ) -> Optional[BaseException]:
        """Give the error hook a chance to absorb ``error``.

        Returns the exception to escalate, or ``None`` when absorbed.
        """
        if workflow.on_error is None:
            return error
        try:
            outcome = await call_handler(workflow.on_error, ctx, state, error)
        except Exception as exc:
            return exc
        if isinstance(outcome, BaseException):
            return outcome
        state.record_error(str(error))
        logger.warning(f"Error hook absorbed failure in {state.id}: {error}")
        return None

    async def _on_cancelled(
        self,
        ctx: ExecutionContext,
        workflow: Workflow,
        state: WorkflowState,
        exc: CancellationError,
    ) -> Tuple[BaseException, bool]:
        """Cancellation fails the run; rollback only if the error hook escalates."""
        logger.info(f"Workflow {state.id} cancelled: {exc}")
        if workflow.on_error is None:
            return exc, False
        escalated = await self._handle_step_error(ctx, workflow, state, exc)
        if escalated is None:
            return exc, False
        return escalated, True

    async def _run_compensations(self, workflow: Workflow, state: WorkflowState) -> None:
        """Unwind the compensation stack, newest first, each entry exactly once."""
        ctx = ExecutionContext()
        with state.locked():
            records = list(reversed(state.compensations))
            state.compensations = []

        for record in records:
            step = workflow.find_step(record.step_name)
            if step is None or step.kind != StepKind.ACTION or step.compensation is None:
                state.record_error(
                    str(CompensationError(record.step_name, LookupError("handler not found")))
                )
                continue
            try:
                if step.compensation_retry is not None:
                    await step.compensation_retry.run(
                        ctx, lambda _attempt: call_handler(step.compensation, ctx, state)
                    )
                else:
                    await call_handler(step.compensation, ctx, state)
            except Exception as exc:
                error = CompensationError(record.step_name, exc)
                state.record_error(str(error))
                logger.warning(f"{state.id}: {error}")
                continue
            with state.locked():
                state.compensated.append(record.step_name)
            logger.info(f"Compensated '{record.step_name}' for {state.id}")

    async def _notify_complete(
        self, workflow: Workflow, ctx: ExecutionContext, state: WorkflowState
    ) -> None:
        if workflow.on_complete is None:
            return
        try:
            await call_handler(workflow.on_complete, ctx, state)
        except Exception:
            logger.exception(f"Completion hook of '{workflow.name}' failed for {state.id}")

    def _log_pause(self, workflow: Workflow, state: WorkflowState) -> None:
        step = workflow.steps[state.current_step]
        logger.info(f"Workflow {state.id} paused at '{step.name}'")

    # ------------------------------------------------------------------
    # Persistence
    async def _save(self, state: WorkflowState, final: bool = False) -> None:
        """Checkpoint ``state``.

        Failures are recorded on the state. Mid-run failures escalate only when
        ``engine.fail_on_save_error`` is set; the final save never raises.
        """
        if self.repository is None:
            return
        try:
            await self.repository.save(state)
        except Exception as exc:
            message = f"failed to save {state.id}: {exc}"
            if self.config.engine.fail_on_save_error and not final:
                raise PersistenceError(message) from exc
            state.record_error(message)
            logger.warning(message)

    async def _load(self, state_id: str) -> WorkflowState:
        if self.repository is None:
            raise PersistenceError("persistence not configured")
        try:
            state = await self.repository.load(state_id)
        except Exception as exc:
            raise PersistenceError(f"failed to load state {state_id}: {exc}") from exc
        if state is None:
            raise PersistenceError(f"state not found: {state_id}")
        return state

    # ------------------------------------------------------------------
    # Resume
    def _check_resumable(self, state: WorkflowState) -> None:
        with self._lock:
            active = state.id in self._tasks
        if active:
            raise WorkflowError(f"workflow {state.id} is already executing")
        if state.status in (WorkflowStatus.COMPLETED, WorkflowStatus.COMPENSATING):
            raise WorkflowError(
                f"workflow {state.id} is {state.status.value} and cannot be resumed"
            )

    async def resume(self, state_id: str, ctx: Optional[ExecutionContext] = None) -> None:
        """Reload ``state_id`` and continue at its recorded step.

        Raises:
            PersistenceError: If no repository is configured or the state is absent.
            DefinitionError: If its workflow is not registered.
        """
        state = await self._load(state_id)
        workflow = self.get_workflow(state.workflow_id)
        self._check_resumable(state)
        state.set_status(WorkflowStatus.RUNNING)
        self._launch(workflow, state, ctx)
        logger.info(f"Resumed {state_id} at step {state.current_step}")

    async def resume_from_checkpoint(
        self, state_id: str, checkpoint: str, ctx: Optional[ExecutionContext] = None
    ) -> None:
        """Reload ``state_id``, rewind to ``checkpoint`` and continue from there.

        Compensations and approval decisions recorded at or after the
        checkpoint are dropped; the steps that produced them will run again.

        Raises:
            PersistenceError: If no repository is configured or the state is absent.
            DefinitionError: If the workflow or the checkpoint is unknown.
        """
        state = await self._load(state_id)
        workflow = self.get_workflow(state.workflow_id)
        index = state.checkpoints.get(checkpoint)
        if index is None:
            raise DefinitionError(f"checkpoint not found: {checkpoint}")
        self._check_resumable(state)

        state.rewind(index)
        with state.locked():
            for name in list(state.approvals):
                position = workflow.index_of(name)
                if position is not None and position >= index:
                    del state.approvals[name]
            state.status = WorkflowStatus.RUNNING
        self.approvals.discard(state_id)
        self._launch(workflow, state, ctx)
        logger.info(f"Resumed {state_id} from checkpoint '{checkpoint}' (step {index})")

    # ------------------------------------------------------------------
    # External events
    async def send_signal(self, name: str, data: Any = None) -> int:
        """Broadcast ``data`` to every current waiter of ``name``."""
        return self.signals.send(name, data)

    def _paused_instance(self, state_id: str) -> Tuple[Workflow, WorkflowState]:
        with self._lock:
            state = self._running.get(state_id)
        if state is None or state.status != WorkflowStatus.PAUSED:
            raise ApprovalError(f"no paused workflow {state_id}")
        return self.get_workflow(state.workflow_id), state

    def _apply_decision(self, state: WorkflowState, request: ApprovalRequest) -> None:
        with state.locked():
            record = state.approvals[request.step_name]
            record.approved_by = list(request.approved_by)
            record.status = request.status
            record.rejected_by = request.rejected_by
            record.reason = request.reason
            if request.satisfied:
                state.status = WorkflowStatus.RUNNING

    async def approve(
        self, state_id: str, approver: str, ctx: Optional[ExecutionContext] = None
    ) -> ApprovalRequest:
        """Record ``approver``'s vote; resumes the run once everyone approved.

        Raises:
            ApprovalError: If the instance is not paused at a gate in this
                engine or ``approver`` is not one of the required approvers.
        """
        workflow, state = self._paused_instance(state_id)
        request = self.approvals.approve(state_id, approver)
        self._apply_decision(state, request)
        if request.status == ApprovalStatus.APPROVED:
            self._launch(workflow, state, ctx)
        else:
            await self._save(state, final=True)
        return request

    async def reject(
        self,
        state_id: str,
        approver: str,
        reason: str = "",
        ctx: Optional[ExecutionContext] = None,
    ) -> ApprovalRequest:
        """Reject the pending gate; the resumed run fails through compensation."""
        workflow, state = self._paused_instance(state_id)
        request = self.approvals.reject(state_id, approver, reason)
        self._apply_decision(state, request)
        self._launch(workflow, state, ctx)
        return request

    async def expire_approvals(self, now: Optional[datetime] = None) -> List[str]:
        """Reject every pending approval past its deadline.

        Meant to be driven periodically, either by :meth:`start_sweeper` or an
        external scheduler. Returns the ids of the expired instances.
        """
        expired: List[str] = []
        for pending in self.approvals.expired(now):
            with self._lock:
                state = self._running.get(pending.state_id)
            request = self.approvals.expire(pending.state_id)
            if request is None or state is None:
                continue
            self._apply_decision(state, request)
            self._launch(self.get_workflow(state.workflow_id), state)
            expired.append(state.id)
        return expired

    def pending_approvals(self) -> List[ApprovalRequest]:
        return self.approvals.pending()

    def start_sweeper(self, interval: Optional[float] = None) -> asyncio.Task:
        """Run :meth:`expire_approvals` every ``interval`` seconds."""
        interval = interval or self.config.engine.approval_sweep_interval
        if not interval:
            raise ValueError("an approval sweep interval is required")

        async def sweep() -> None:
            while True:
                await asyncio.sleep(interval)
                expired = await self.expire_approvals()
                if expired:
                    logger.info(f"Expired approvals for {', '.join(expired)}")

        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                sweep(), name="sagaflow:approval-sweeper"
            )
        return self._sweeper

    # ------------------------------------------------------------------
    # Inspection and lifecycle
    def get_state(self, state_id: str) -> Optional[WorkflowState]:
        """Return the in-memory state of a running or paused instance."""
        with self._lock:
            return self._running.get(state_id)

    async def wait(self, state_id: str, timeout: Optional[float] = None) -> Optional[WorkflowState]:
        """Wait for the current background run of ``state_id`` to return.

        When nothing is executing, the in-memory state is returned, falling back
        to the repository for instances that already finished.
        """
        with self._lock:
            task = self._tasks.get(state_id)
        if task is not None:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        state = self.get_state(state_id)
        if state is None and self.repository is not None:
            state = await self.repository.load(state_id)
        return state

    def cancel(self, state_id: str, reason: str = "cancelled by caller") -> bool:
        """Cancel the context of a running instance. Takes effect at the next step boundary."""
        with self._lock:
            ctx = self._contexts.get(state_id)
        if ctx is None:
            return False
        ctx.cancel(reason)
        return True

    async def shutdown(self) -> None:
        """Stop the sweeper, cancel every run context and wait for tasks to exit."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        with self._lock:
            contexts = list(self._contexts.values())
            tasks = list(self._tasks.values()) + list(self._background)
        for ctx in contexts:
            ctx.cancel("engine shutting down")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Journal
    async def _journal_run_start(self, state: WorkflowState) -> Optional[UUID]:
        if self.journal is None:
            return None
        try:
            run = await self.journal.record_run_start(state.id, state.workflow_id)
        except Exception as exc:
            logger.warning(f"Journal unavailable for {state.id}: {exc}")
            return None
        return run.id

    async def _journal_run_finish(self, scope: RunScope, status: str) -> None:
        if self.journal is None or scope.journal_run_id is None:
            return
        try:
            await self.journal.record_run_finish(scope.journal_run_id, status)
        except Exception as exc:
            logger.warning(f"Journal write failed: {exc}")

    async def _journal_step_start(
        self, scope: RunScope, step_name: str, attempt: int
    ) -> Optional[UUID]:
        if self.journal is None or scope.journal_run_id is None:
            return None
        try:
            record = await self.journal.record_step_start(
                scope.journal_run_id, step_name, attempt
            )
        except Exception as exc:
            logger.warning(f"Journal write failed: {exc}")
            return None
        return record.id

    async def _journal_step_result(self, record_id: Optional[UUID], result: Any) -> None:
        if self.journal is None or record_id is None:
            return
        try:
            await self.journal.record_step_result(record_id, result)
        except Exception as exc:
            logger.warning(f"Journal write failed: {exc}")

    async def _journal_step_error(self, record_id: Optional[UUID], error: str) -> None:
        if self.journal is None or record_id is None:
            return
        try:
            await self.journal.record_step_error(record_id, error)
        except Exception as exc:
            logger.warning(f"Journal write failed: {exc}")
