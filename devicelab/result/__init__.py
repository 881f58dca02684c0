from .types import FailureKind, Outcome, ResultFormatError, TaskResult

__all__ = ["TaskResult", "Outcome", "FailureKind", "ResultFormatError"]
