"""Immutable workflow definitions and the fluent builder that produces them."""

from __future__ import annotations

from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict

from .constants import DEFAULT_WORKFLOW_VERSION
from .context import ExecutionContext
from .errors import DefinitionError
from .state import WorkflowState
from .steps import (
    ActionHandler,
    ActionStep,
    ApprovalStep,
    CheckpointStep,
    CompensationHandler,
    Condition,
    ConditionalBranch,
    ConditionalStep,
    JoinPolicy,
    LoopStep,
    ParallelStep,
    SignalStep,
    SleepStep,
    Step,
    StepKind,
    SubWorkflowStep,
    iter_steps,
)
from .utils.retry import RetryPolicy

# on_error(ctx, state, error) -> None to absorb, or an exception to escalate.
ErrorHook = Callable[[ExecutionContext, WorkflowState, Exception], Any]
CompleteHook = Callable[[ExecutionContext, WorkflowState], Any]


class Workflow(BaseModel):
    """Named, ordered collection of steps. Never mutated after ``build()``."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    version: str = DEFAULT_WORKFLOW_VERSION
    steps: Tuple[Step, ...]
    on_error: Optional[ErrorHook] = None
    on_complete: Optional[CompleteHook] = None

    def find_step(self, name: str) -> Optional[Step]:
        """Look a step up by name anywhere in the definition."""
        for step in iter_steps(self.steps):
            if step.name == name:
                return step
        return None

    def index_of(self, name: str) -> Optional[int]:
        """Top-level position of ``name``, ``None`` for nested or unknown steps."""
        for index, step in enumerate(self.steps):
            if step.name == name:
                return index
        return None

    def __len__(self) -> int:
        return len(self.steps)


Branch = Union["StepChain", Sequence[Step]]


def _as_steps(branch: Branch) -> Tuple[Step, ...]:
    if isinstance(branch, StepChain):
        return branch.steps
    return tuple(branch)


class StepChain:
    """Fluent, append-only list of steps.

    Used directly for nested branches and as the base of
    :class:`WorkflowBuilder` for the top-level sequence.
    """

    def __init__(self) -> None:
        self._steps: List[Step] = []

    @property
    def steps(self) -> Tuple[Step, ...]:
        return tuple(self._steps)

    def add(self, step: Step) -> "StepChain":
        self._steps.append(step)
        return self

    def step(
        self,
        name: str,
        handler: ActionHandler,
        *,
        retry: Optional[RetryPolicy] = None,
        compensate: Optional[CompensationHandler] = None,
        timeout: Optional[float] = None,
    ) -> "StepChain":
        """Append an action step."""
        return self.add(
            ActionStep(
                name=name,
                handler=handler,
                retry=retry,
                compensation=compensate,
                timeout=timeout,
            )
        )

    def _replace_last_action(self, **update: Any) -> "StepChain":
        if not self._steps or self._steps[-1].kind != StepKind.ACTION:
            raise DefinitionError("compensate()/retry() must follow an action step")
        self._steps[-1] = self._steps[-1].model_copy(update=update)
        return self

    def compensate(
        self, handler: CompensationHandler, *, retry: Optional[RetryPolicy] = None
    ) -> "StepChain":
        """Attach a rollback handler to the previously added action."""
        return self._replace_last_action(compensation=handler, compensation_retry=retry)

    def retry(self, policy: RetryPolicy) -> "StepChain":
        """Attach a retry policy to the previously added action."""
        return self._replace_last_action(retry=policy)

    def if_(
        self,
        name: str,
        condition: Condition,
        then: Branch,
        otherwise: Optional[Branch] = None,
        elif_: Iterable[Tuple[Condition, Branch]] = (),
    ) -> "StepChain":
        """Append a conditional step with ``then``/``elif``/``else`` branches."""
        return self.add(
            ConditionalStep(
                name=name,
                condition=condition,
                then_steps=_as_steps(then),
                elif_branches=tuple(
                    ConditionalBranch(condition=cond, steps=_as_steps(branch))
                    for cond, branch in elif_
                ),
                else_steps=_as_steps(otherwise) if otherwise is not None else None,
            )
        )

    def parallel(
        self,
        name: str,
        *branches: Branch,
        join: JoinPolicy = JoinPolicy.WAIT_ALL,
        wait_count: Optional[int] = None,
    ) -> "StepChain":
        """Append a parallel step; one concurrent task per branch."""
        if wait_count is not None and join == JoinPolicy.WAIT_ALL:
            join = JoinPolicy.WAIT_N
        return self.add(
            ParallelStep(
                name=name,
                parallel_branches=tuple(_as_steps(b) for b in branches),
                join=join,
                wait_count=wait_count,
            )
        )

    def await_approval(
        self, name: str, approvers: Iterable[str], timeout: Optional[float] = None
    ) -> "StepChain":
        return self.add(
            ApprovalStep(name=name, approvers=tuple(approvers), timeout=timeout)
        )

    def await_signal(
        self,
        name: str,
        signal: str,
        timeout: Optional[float] = None,
        result_key: Optional[str] = None,
        on_timeout: Optional[str] = None,
    ) -> "StepChain":
        return self.add(
            SignalStep(
                name=name,
                signal=signal,
                timeout=timeout,
                result_key=result_key,
                on_timeout=on_timeout,
            )
        )

    def sleep(self, name: str, seconds: float) -> "StepChain":
        return self.add(SleepStep(name=name, duration=seconds))

    def checkpoint(self, name: str) -> "StepChain":
        return self.add(CheckpointStep(name=name))

    def loop(
        self,
        name: str,
        body: Branch,
        *,
        for_each: Optional[str] = None,
        while_: Optional[Condition] = None,
        max_iterations: Optional[int] = None,
        break_when: Optional[Condition] = None,
    ) -> "StepChain":
        return self.add(
            LoopStep(
                name=name,
                body=_as_steps(body),
                for_each=for_each,
                while_condition=while_,
                max_iterations=max_iterations,
                break_when=break_when,
            )
        )

    def sub_workflow(
        self, name: str, workflow: Workflow, input: Optional[dict] = None
    ) -> "StepChain":
        return self.add(SubWorkflowStep(name=name, workflow=workflow, input=input or {}))


def chain() -> StepChain:
    """Start a nested branch."""
    return StepChain()


class WorkflowBuilder(StepChain):
    """Builds a validated :class:`Workflow`.

    Example::

        order = (
            WorkflowBuilder("order")
            .step("validate", validate)
            .step("charge", charge, compensate=refund)
            .step("ship", ship)
            .build()
        )
    """

    def __init__(self, name: str) -> None:
        super().__init__()
        self._name = name
        self._version = DEFAULT_WORKFLOW_VERSION
        self._on_error: Optional[ErrorHook] = None
        self._on_complete: Optional[CompleteHook] = None

    def version(self, version: str) -> "WorkflowBuilder":
        self._version = version
        return self

    def on_error(self, hook: ErrorHook) -> "WorkflowBuilder":
        self._on_error = hook
        return self

    def on_complete(self, hook: CompleteHook) -> "WorkflowBuilder":
        self._on_complete = hook
        return self

    def build(self) -> Workflow:
        """Validate and freeze the definition.

        Raises:
            DefinitionError: On duplicate or empty step names, empty branches,
                invalid join counts, approval steps without approvers or
                nested inside another step, or unbounded loops.
        """
        if not self._name:
            raise DefinitionError("workflow name must be non-empty")
        if not self._steps:
            raise DefinitionError(f"workflow '{self._name}' has no steps")
        validate_steps(self.steps)
        return Workflow(
            name=self._name,
            version=self._version,
            steps=self.steps,
            on_error=self._on_error,
            on_complete=self._on_complete,
        )


def validate_steps(steps: Tuple[Step, ...]) -> None:
    seen: set[str] = set()
    for step in iter_steps(steps):
        if not step.name:
            raise DefinitionError("step names must be non-empty")
        if step.name in seen:
            raise DefinitionError(f"duplicate step name: {step.name}")
        seen.add(step.name)
        _validate_step(step)

    top_level = {id(step) for step in steps}
    for step in iter_steps(steps):
        if step.kind == StepKind.APPROVAL and id(step) not in top_level:
            raise DefinitionError(
                f"approval step '{step.name}' must be at the top level of the workflow"
            )


def _validate_step(step: Step) -> None:
    for branch in step.branches():
        if not branch:
            raise DefinitionError(f"step '{step.name}' has an empty branch")

    if step.kind == StepKind.PARALLEL:
        if not step.parallel_branches:
            raise DefinitionError(f"parallel step '{step.name}' has no branches")
        if step.join == JoinPolicy.WAIT_N and not (
            step.wait_count and 1 <= step.wait_count <= len(step.parallel_branches)
        ):
            raise DefinitionError(
                f"parallel step '{step.name}' wait_count must be between 1 and "
                f"{len(step.parallel_branches)}"
            )
    elif step.kind == StepKind.APPROVAL:
        if not step.approvers:
            raise DefinitionError(f"approval step '{step.name}' needs at least one approver")
    elif step.kind == StepKind.LOOP:
        if (
            step.for_each is None
            and step.while_condition is None
            and step.max_iterations is None
        ):
            raise DefinitionError(
                f"loop step '{step.name}' needs for_each, while_ or max_iterations"
            )
    elif step.kind == StepKind.SUB_WORKFLOW:
        if not isinstance(step.workflow, Workflow):
            raise DefinitionError(
                f"sub-workflow step '{step.name}' needs a built Workflow"
            )
        if any(s.kind == StepKind.APPROVAL for s in iter_steps(step.workflow.steps)):
            raise DefinitionError(
                f"sub-workflow step '{step.name}' cannot embed an approval gate"
            )
