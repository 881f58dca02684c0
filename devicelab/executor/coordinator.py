from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from typing import Iterable, Iterator

from devicelab.config import RunSettings, TaskDefinition
from devicelab.result import FailureKind, TaskResult

from .launcher import Launcher
from .report import ResultSink
from .types import RunReport

logger = logging.getLogger(__name__)


class DeviceLocks:
    """One lock per physical device, shared by every task that touches it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, device: str | None) -> Iterator[None]:
        if device is None:
            yield
            return

        with self._guard:
            lock = self._locks.setdefault(device, threading.Lock())

        with lock:
            yield


class Coordinator:
    def __init__(
        self,
        launcher: Launcher,
        settings: RunSettings,
        *,
        locks: DeviceLocks | None = None,
        sinks: Iterable[ResultSink] = (),
    ):
        self.launcher = launcher
        self.settings = settings
        self.locks = locks or DeviceLocks()
        self.sinks = list(sinks)

    def run(self, queue: list[TaskDefinition]) -> RunReport:
        run_deadline = None
        if self.settings.run_timeout is not None:
            run_deadline = time.monotonic() + self.settings.run_timeout

        results: dict[str, TaskResult] = {}

        if self.settings.jobs <= 1:
            for index, task in enumerate(queue, start=1):
                logger.info("Running %s (%d/%d)", task.name, index, len(queue))
                results[task.name] = self._run_one(task, run_deadline)
        else:
            pool = ThreadPoolExecutor(
                max_workers=self.settings.jobs,
                thread_name_prefix="devicelab",
            )
            try:
                futures = {pool.submit(self._run_one, task, run_deadline): task for task in queue}
                # Results are only ever written here, on the coordinator thread.
                for future in as_completed(futures):
                    results[futures[future].name] = future.result()
            except KeyboardInterrupt:
                logger.warning("Interrupted, stopping running tasks")
                pool.shutdown(wait=False, cancel_futures=True)
                self.launcher.abort()
                raise
            finally:
                pool.shutdown(wait=True)

        report = RunReport.from_results(queue, results)
        if report.failed:
            logger.warning("Failed tasks: %s", ", ".join(report.failed))

        for sink in self.sinks:
            sink.submit(report)

        return report

    def _run_one(self, task: TaskDefinition, run_deadline: float | None) -> TaskResult:
        with self.locks.hold(task.device):
            if run_deadline is not None and time.monotonic() >= run_deadline:
                logger.warning("Not starting %s: run deadline exceeded", task.name)
                return TaskResult.failure(
                    "run deadline exceeded before task started", FailureKind.TIMEOUT
                )

            return self.launcher.run(task, deadline=run_deadline)
