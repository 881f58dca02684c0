from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .types import Manifest, ManifestError, TaskDefinition

TASKS_DIR = "tasks"


@dataclass(frozen=True)
class LaunchSpec:
    name: str
    script: Path
    argv: tuple[str, ...]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)


class TaskRegistry:
    """Maps task names to the command that launches their script."""

    def __init__(self, specs: dict[str, LaunchSpec]):
        self._specs = specs

    @classmethod
    def from_manifest(cls, manifest: Manifest, python: str | None = None) -> TaskRegistry:
        interpreter = python or sys.executable
        specs = {}
        for task in manifest:
            script = _resolve_entry(manifest.base_dir, task)
            specs[task.name] = LaunchSpec(
                name=task.name,
                script=script,
                argv=(interpreter, str(script)),
                cwd=manifest.base_dir,
                env=dict(task.env),
            )

        return cls(specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def get(self, name: str) -> LaunchSpec:
        if name not in self._specs:
            raise KeyError(name)

        return self._specs[name]

    def validate(self, names: Iterable[str]) -> None:
        """Fail before anything runs if a task has no script to launch."""
        missing = []
        for name in names:
            spec = self.get(name)
            if not spec.script.is_file():
                missing.append(f"{name} ({spec.script})")

        if missing:
            raise ManifestError("Task entry point not found: " + ", ".join(missing))


def _resolve_entry(base_dir: Path, task: TaskDefinition) -> Path:
    if task.entry is None:
        return base_dir / TASKS_DIR / f"{task.name}.py"

    entry = Path(task.entry).expanduser()
    return entry if entry.is_absolute() else base_dir / entry
