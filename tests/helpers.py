"""Shared helpers: write task scripts and manifests into a temporary lab."""

from __future__ import annotations

import json
import textwrap
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]

# Child processes import devicelab from this checkout even when it is not installed.
CHILD_ENV = {"PYTHONPATH": str(REPO_ROOT)}


def write_task(base_dir: Path, name: str, body: str) -> Path:
    """Write tasks/<name>.py; ``body`` is dedented and run as the script."""
    script = base_dir / "tasks" / f"{name}.py"
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(textwrap.dedent(body), encoding="utf-8")
    return script


def write_manifest(path: Path, tasks: dict, settings: dict | None = None) -> Path:
    raw: dict = {"tasks": tasks}
    if settings is not None:
        raw["settings"] = settings
    path.write_text(json.dumps(raw), encoding="utf-8")
    return path


def entry(description: str = "a task", stage: str = "devicelab", **extra) -> dict:
    fields = {"description": description, "stage": stage, "env": dict(CHILD_ENV)}
    fields.update(extra)
    return fields


SUCCESS_TASK = """
    from devicelab import TaskResult, task

    task(lambda: TaskResult.success({"latency_ms": 42}))
"""

FAILING_TASK = """
    from devicelab import TaskResult, task

    task(lambda: TaskResult.failure("device not found"))
"""

CRASHING_TASK = """
    from devicelab import task

    def main():
        raise RuntimeError("boom")

    task(main)
"""

HANGING_TASK = """
    import time

    from devicelab import task

    def main():
        while True:
            time.sleep(1)

    task(main)
"""
