from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from enum import Enum

from devicelab.config.types import TaskDefinition
from devicelab.result import TaskResult


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COLLECTING = "collecting"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CRASHED = "crashed"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.TIMED_OUT, RunState.CRASHED)


@dataclass
class TaskRun:
    definition: TaskDefinition
    state: RunState = RunState.PENDING
    process: subprocess.Popen | None = None
    result: TaskResult | None = None
    pid: int | None = None
    returncode: int | None = None
    duration_s: float = 0.0


@dataclass(frozen=True)
class RunReport:
    order: list[str]
    results: dict[str, TaskResult]
    failed: list[str]
    flaky: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_results(
        cls,
        queue: list[TaskDefinition],
        results: dict[str, TaskResult],
    ) -> RunReport:
        order = [task.name for task in queue]
        ordered = {name: results[name] for name in order}
        failed = [name for name in order if not ordered[name].succeeded]
        flaky = frozenset(task.name for task in queue if task.flaky)
        return cls(order, ordered, failed, flaky)

    @property
    def succeeded(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def to_json(self) -> dict[str, dict]:
        return {
            name: {**self.results[name].to_json(), "flaky": name in self.flaky}
            for name in self.order
        }


class RunInterruptedError(Exception):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)
