"""Sagaflow: durable, resumable workflows with saga compensation."""

from .approvals import ApprovalManager, ApprovalRequest
from .config import SagaflowConfig, load_config
from .context import ExecutionContext
from .cron import CronScheduler, Schedule, parse_cron
from .engine import WorkflowEngine
from .errors import (
    ApprovalError,
    CancellationError,
    CompensationError,
    DefinitionError,
    PersistenceError,
    RetryExhaustedError,
    StepError,
    WorkflowError,
)
from .journal import ExecutionJournal
from .persistence import get_repository
from .signals import SignalManager
from .state import ApprovalStatus, WorkflowState, WorkflowStatus
from .steps import JoinPolicy, StepKind
from .utils.retry import RetryPolicy
from .workflow import StepChain, Workflow, WorkflowBuilder, chain

__version__ = "0.1.0"
__all__ = [
    "ApprovalError",
    "ApprovalManager",
    "ApprovalRequest",
    "ApprovalStatus",
    "CancellationError",
    "CompensationError",
    "DefinitionError",
    "CronScheduler",
    "ExecutionContext",
    "ExecutionJournal",
    "JoinPolicy",
    "PersistenceError",
    "RetryExhaustedError",
    "RetryPolicy",
    "SagaflowConfig",
    "Schedule",
    "SignalManager",
    "StepChain",
    "StepError",
    "StepKind",
    "Workflow",
    "WorkflowBuilder",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowState",
    "WorkflowStatus",
    "chain",
    "get_repository",
    "load_config",
    "parse_cron",
]
