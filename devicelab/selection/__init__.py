from .selector import select_tasks
from .types import SelectionError, SelectionRequest, UnknownTaskError

__all__ = ["select_tasks", "SelectionRequest", "SelectionError", "UnknownTaskError"]
