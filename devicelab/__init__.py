from devicelab.result import FailureKind, Outcome, TaskResult
from devicelab.runtime import report, task

__all__ = ["task", "report", "TaskResult", "Outcome", "FailureKind"]
