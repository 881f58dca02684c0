from devicelab.result import FailureKind, Outcome, TaskResult

from .harness import TaskHarness, report, task
from .types import DoublePublishError, HarnessError, TaskAlreadyRegisteredError

__all__ = [
    "task",
    "report",
    "TaskHarness",
    "TaskResult",
    "Outcome",
    "FailureKind",
    "HarnessError",
    "DoublePublishError",
    "TaskAlreadyRegisteredError",
]
