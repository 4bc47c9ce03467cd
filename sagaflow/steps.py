"""Step variants a workflow is built from.

Steps form a closed union discriminated by :class:`StepKind`. The engine
dispatches on ``kind`` through a single table, so adding a kind means adding
a model here and a runner in :mod:`sagaflow.execute`.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Callable, Dict, Iterator, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .context import ExecutionContext
from .state import WorkflowState
from .utils.retry import RetryPolicy

# Handlers may be plain functions or coroutine functions.
ActionHandler = Callable[[ExecutionContext, WorkflowState], Any]
CompensationHandler = Callable[[ExecutionContext, WorkflowState], Any]
Condition = Callable[[WorkflowState], bool]


class StepKind(str, Enum):
    ACTION = "action"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"
    APPROVAL = "approval"
    SIGNAL = "signal"
    SLEEP = "sleep"
    CHECKPOINT = "checkpoint"
    LOOP = "loop"
    SUB_WORKFLOW = "sub_workflow"


class JoinPolicy(str, Enum):
    """When a parallel step counts as complete."""

    WAIT_ALL = "wait_all"
    WAIT_ANY = "wait_any"
    WAIT_N = "wait_n"


class BaseStep(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str

    def branches(self) -> Tuple[Tuple["Step", ...], ...]:
        """Nested step sequences owned by this step."""
        return ()


class ActionStep(BaseStep):
    kind: Literal[StepKind.ACTION] = StepKind.ACTION
    handler: ActionHandler
    retry: Optional[RetryPolicy] = None
    compensation: Optional[CompensationHandler] = None
    compensation_retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = None


class ConditionalBranch(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    condition: Condition
    steps: Tuple["Step", ...]


class ConditionalStep(BaseStep):
    kind: Literal[StepKind.CONDITIONAL] = StepKind.CONDITIONAL
    condition: Condition
    then_steps: Tuple["Step", ...]
    elif_branches: Tuple[ConditionalBranch, ...] = ()
    else_steps: Optional[Tuple["Step", ...]] = None

    def branches(self) -> Tuple[Tuple["Step", ...], ...]:
        found = [self.then_steps] + [b.steps for b in self.elif_branches]
        if self.else_steps is not None:
            found.append(self.else_steps)
        return tuple(found)

    def select(self, state: WorkflowState) -> Tuple[Optional[str], Tuple["Step", ...]]:
        """Evaluate the predicate chain once and return ``(label, branch)``.

        The label is ``"then"``, ``"elif:<n>"``, ``"else"`` or ``None`` when
        nothing matched and there is no else branch.
        """
        if self.condition(state):
            return "then", self.then_steps
        for position, branch in enumerate(self.elif_branches):
            if branch.condition(state):
                return f"elif:{position}", branch.steps
        if self.else_steps is not None:
            return "else", self.else_steps
        return None, ()


class ParallelStep(BaseStep):
    kind: Literal[StepKind.PARALLEL] = StepKind.PARALLEL
    parallel_branches: Tuple[Tuple["Step", ...], ...]
    join: JoinPolicy = JoinPolicy.WAIT_ALL
    wait_count: Optional[int] = None

    def branches(self) -> Tuple[Tuple["Step", ...], ...]:
        return self.parallel_branches

    @property
    def required_successes(self) -> int:
        if self.join == JoinPolicy.WAIT_ALL:
            return len(self.parallel_branches)
        if self.join == JoinPolicy.WAIT_ANY:
            return 1
        return self.wait_count or 1


class ApprovalStep(BaseStep):
    kind: Literal[StepKind.APPROVAL] = StepKind.APPROVAL
    approvers: Tuple[str, ...]
    timeout: Optional[float] = None


class SignalStep(BaseStep):
    kind: Literal[StepKind.SIGNAL] = StepKind.SIGNAL
    signal: str
    timeout: Optional[float] = None
    result_key: Optional[str] = None
    on_timeout: Optional[str] = None


class SleepStep(BaseStep):
    kind: Literal[StepKind.SLEEP] = StepKind.SLEEP
    duration: float


class CheckpointStep(BaseStep):
    kind: Literal[StepKind.CHECKPOINT] = StepKind.CHECKPOINT


class LoopStep(BaseStep):
    kind: Literal[StepKind.LOOP] = StepKind.LOOP
    body: Tuple["Step", ...]
    for_each: Optional[str] = None
    while_condition: Optional[Condition] = None
    max_iterations: Optional[int] = None
    break_when: Optional[Condition] = None

    def branches(self) -> Tuple[Tuple["Step", ...], ...]:
        return (self.body,)


class SubWorkflowStep(BaseStep):
    kind: Literal[StepKind.SUB_WORKFLOW] = StepKind.SUB_WORKFLOW
    # sagaflow.workflow.Workflow; typed loosely to avoid a circular import
    workflow: Any
    input: Dict[str, Any] = Field(default_factory=dict)


Step = Annotated[
    Union[
        ActionStep,
        ConditionalStep,
        ParallelStep,
        ApprovalStep,
        SignalStep,
        SleepStep,
        CheckpointStep,
        LoopStep,
        SubWorkflowStep,
    ],
    Field(discriminator="kind"),
]

for _model in (ConditionalBranch, ConditionalStep, ParallelStep, LoopStep):
    _model.model_rebuild()


def iter_steps(steps: Tuple[Step, ...]) -> Iterator[Step]:
    """Depth-first walk over ``steps`` and every nested branch."""
    for step in steps:
        yield step
        for branch in step.branches():
            yield from iter_steps(branch)
