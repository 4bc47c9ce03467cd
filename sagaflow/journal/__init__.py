from .journal import ExecutionJournal
from .models import StepExecution, WorkflowRun

__all__ = [
    "ExecutionJournal",
    "StepExecution",
    "WorkflowRun",
]
