from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TASK_TIMEOUT_S = 600.0
DEFAULT_CONNECT_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class TaskDefinition:
    name: str
    description: str
    stage: str
    required_capabilities: frozenset[str] = frozenset()
    entry: str | None = None
    timeout: float | None = None
    flaky: bool = False
    device: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class RunSettings:
    task_timeout: float = DEFAULT_TASK_TIMEOUT_S
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_S
    jobs: int = 1
    run_timeout: float | None = None

    def timeout_for(self, task: TaskDefinition) -> float:
        return task.timeout if task.timeout is not None else self.task_timeout


@dataclass
class Manifest:
    tasks: dict[str, TaskDefinition]
    settings: RunSettings = field(default_factory=RunSettings)
    base_dir: Path = field(default_factory=Path.cwd)

    def __iter__(self):
        # Declaration order, never sorted.
        yield from self.tasks.values()

    def __len__(self):
        return len(self.tasks)

    def has_task(self, name: str) -> bool:
        return name in self.tasks

    def get_task(self, name: str) -> TaskDefinition:
        if not self.has_task(name):
            raise KeyError(name)

        return self.tasks[name]

    def task_names(self) -> list[str]:
        return list(self.tasks.keys())


class ManifestError(Exception):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class UnsupportedManifestFormatError(ManifestError):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)
