# tests/test_coordinator.py
from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import pytest
from helpers import CHILD_ENV, CRASHING_TASK, SUCCESS_TASK, write_task

from devicelab.config import Manifest, RunSettings, TaskDefinition, TaskRegistry
from devicelab.executor import Coordinator, JsonFileSink, Launcher, RunReport
from devicelab.result import FailureKind, TaskResult


def _task(name: str, **extra) -> TaskDefinition:
    return TaskDefinition(name=name, description=name, stage="s", **extra)


class FakeLauncher:
    def __init__(self, results: dict[str, TaskResult], delay: float = 0.0):
        self.results = results
        self.delay = delay
        self.calls: list[str] = []
        self.active: dict[str | None, int] = {}
        self.peak: dict[str | None, int] = {}
        self._lock = threading.Lock()
        self.aborted = threading.Event()

    def run(self, definition: TaskDefinition, timeout=None, deadline=None) -> TaskResult:
        key = definition.device
        with self._lock:
            self.calls.append(definition.name)
            self.active[key] = self.active.get(key, 0) + 1
            self.peak[key] = max(self.peak.get(key, 0), self.active[key])

        time.sleep(self.delay)

        with self._lock:
            self.active[key] -= 1
        return self.results[definition.name]

    def abort(self) -> None:
        self.aborted.set()


class InterruptingLauncher(FakeLauncher):
    def run(self, definition: TaskDefinition, timeout=None, deadline=None) -> TaskResult:
        if definition.name == "boom":
            raise KeyboardInterrupt
        # Stands in for a task process that only ends once it is stopped.
        self.aborted.wait(10)
        return TaskResult.failure("stopped")


def test_sequential_run_aggregates_in_queue_order() -> None:
    queue = [_task("b"), _task("a"), _task("c")]
    launcher = FakeLauncher(
        {
            "a": TaskResult.success({"fps": 60}),
            "b": TaskResult.failure("no device"),
            "c": TaskResult.success(),
        }
    )

    report = Coordinator(launcher, RunSettings()).run(queue)  # type: ignore[arg-type]

    assert launcher.calls == ["b", "a", "c"]
    assert report.order == ["b", "a", "c"]
    assert report.failed == ["b"]
    assert not report.succeeded
    assert report.exit_code == 1


def test_all_success_exit_code_zero() -> None:
    launcher = FakeLauncher({"a": TaskResult.success(), "b": TaskResult.success()})

    report = Coordinator(launcher, RunSettings()).run([_task("a"), _task("b")])  # type: ignore[arg-type]

    assert report.succeeded
    assert report.exit_code == 0
    assert report.failed == []


def test_empty_queue_succeeds() -> None:
    report = Coordinator(FakeLauncher({}), RunSettings()).run([])  # type: ignore[arg-type]
    assert report.succeeded
    assert report.to_json() == {}


def test_parallel_run_keeps_queue_order_in_report() -> None:
    names = [f"t{i}" for i in range(6)]
    launcher = FakeLauncher({name: TaskResult.success() for name in names}, delay=0.05)

    report = Coordinator(launcher, RunSettings(jobs=3)).run(  # type: ignore[arg-type]
        [_task(name) for name in names]
    )

    assert sorted(launcher.calls) == names
    assert report.order == names
    assert list(report.results) == names
    assert report.succeeded


def test_device_lock_serializes_tasks_on_the_same_device() -> None:
    queue = [_task(f"d{i}", device="pixel") for i in range(4)]
    launcher = FakeLauncher({t.name: TaskResult.success() for t in queue}, delay=0.05)

    Coordinator(launcher, RunSettings(jobs=4)).run(queue)  # type: ignore[arg-type]

    assert launcher.peak["pixel"] == 1


def test_run_deadline_fails_tasks_that_did_not_start() -> None:
    launcher = FakeLauncher({"slow": TaskResult.success(), "late": TaskResult.success()}, delay=0.5)
    settings = RunSettings(run_timeout=0.2)

    report = Coordinator(launcher, settings).run([_task("slow"), _task("late")])  # type: ignore[arg-type]

    assert launcher.calls == ["slow"]
    assert report.results["late"].failure_kind is FailureKind.TIMEOUT
    assert report.results["late"].failure_detail == "run deadline exceeded before task started"
    assert report.failed == ["late"]


def test_report_json_and_sink(tmp_path: Path) -> None:
    queue = [_task("t1", flaky=True)]
    launcher = FakeLauncher({"t1": TaskResult.success({"latency_ms": 42})})
    out = tmp_path / "reports" / "run.json"

    Coordinator(launcher, RunSettings(), sinks=[JsonFileSink(out)]).run(queue)  # type: ignore[arg-type]

    assert json.loads(out.read_text(encoding="utf-8")) == {
        "t1": {
            "outcome": "success",
            "data": {"latency_ms": 42},
            "failure_detail": None,
            "failure_kind": None,
            "benchmark_score_keys": [],
            "flaky": True,
        }
    }


def test_crashing_task_does_not_affect_the_next_one(tmp_path: Path) -> None:
    write_task(tmp_path, "a_crash", CRASHING_TASK)
    write_task(tmp_path, "b_ok", SUCCESS_TASK)
    queue = [_task("a_crash", env=dict(CHILD_ENV)), _task("b_ok", env=dict(CHILD_ENV))]
    manifest = Manifest(tasks={t.name: t for t in queue}, base_dir=tmp_path)
    settings = RunSettings(task_timeout=30.0, connect_timeout=15.0)
    launcher = Launcher(TaskRegistry.from_manifest(manifest), settings, terminate_grace=2.0)

    report = Coordinator(launcher, settings).run(queue)

    assert report.failed == ["a_crash"]
    assert report.results["a_crash"].failure_kind is FailureKind.CRASH
    assert report.results["b_ok"] == TaskResult.success({"latency_ms": 42})


def test_from_results_marks_flaky() -> None:
    queue = [_task("a", flaky=True), _task("b")]
    report = RunReport.from_results(
        queue, {"b": TaskResult.success(), "a": TaskResult.failure("x")}
    )

    assert report.order == ["a", "b"]
    assert report.flaky == frozenset({"a"})
    assert report.to_json()["a"]["flaky"] is True
    assert report.to_json()["b"]["flaky"] is False


def test_interrupt_during_parallel_run_stops_running_tasks() -> None:
    launcher = InterruptingLauncher({})
    queue = [_task("slow"), _task("boom"), _task("t3"), _task("t4")]

    start = time.monotonic()
    with pytest.raises(KeyboardInterrupt):
        Coordinator(launcher, RunSettings(jobs=2)).run(queue)  # type: ignore[arg-type]

    assert time.monotonic() - start < 5
    assert launcher.aborted.is_set()
