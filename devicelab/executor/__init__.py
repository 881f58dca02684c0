from .coordinator import Coordinator, DeviceLocks
from .launcher import Launcher
from .report import JsonFileSink, ResultSink, print_summary
from .types import RunInterruptedError, RunReport, RunState, TaskRun

__all__ = [
    "Launcher",
    "Coordinator",
    "DeviceLocks",
    "RunReport",
    "RunState",
    "TaskRun",
    "RunInterruptedError",
    "ResultSink",
    "JsonFileSink",
    "print_summary",
]
