"""Runs one task definition in its own process and turns every outcome into data."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from contextlib import contextmanager, suppress
from typing import Callable, Iterator

from devicelab.config import LaunchSpec, RunSettings, TaskDefinition, TaskRegistry
from devicelab.inspection import (
    ConnectTimeoutError,
    InspectionConnectionError,
    ProcessExitError,
    ProtocolError,
    ResultTimeoutError,
    await_result,
    connect,
    terminate,
)
from devicelab.inspection.client import DEFAULT_TERMINATE_GRACE_S
from devicelab.result import FailureKind, TaskResult
from devicelab.runtime import protocol
from devicelab.runtime.types import DoublePublishError

from .types import RunInterruptedError, RunState, TaskRun

logger = logging.getLogger(__name__)

CLEAN_EXIT_WAIT_S = 1.0

StateCallback = Callable[[TaskRun], None]


class Launcher:
    def __init__(
        self,
        registry: TaskRegistry,
        settings: RunSettings,
        *,
        terminate_grace: float = DEFAULT_TERMINATE_GRACE_S,
        on_state: StateCallback | None = None,
    ):
        self.registry = registry
        self.settings = settings
        self.terminate_grace = terminate_grace
        self.on_state = on_state
        self._lock = threading.Lock()
        self._live: set[subprocess.Popen] = set()
        self._aborted = False

    def run(
        self,
        definition: TaskDefinition,
        timeout: float | None = None,
        deadline: float | None = None,
    ) -> TaskResult:
        task_run = self.run_task(definition, timeout=timeout, deadline=deadline)
        if task_run.result is None:
            raise RuntimeError(
                f"{definition.name} reached {task_run.state.value} without a result"
            )
        return task_run.result

    def abort(self) -> None:
        """Stop every live task process. Later runs fail without spawning."""
        with self._lock:
            self._aborted = True
            live = list(self._live)

        for process in live:
            logger.warning("Stopping pid %s", process.pid)
            terminate(process, self.terminate_grace, group=True)

    def run_task(
        self,
        definition: TaskDefinition,
        timeout: float | None = None,
        deadline: float | None = None,
    ) -> TaskRun:
        """Drive ``definition`` to a terminal state.

        ``timeout`` overrides the task's own budget; ``deadline`` is an absolute
        ``time.monotonic()`` ceiling (the run-wide deadline). Both also bound
        the connection phase.
        """
        task_run = TaskRun(definition)
        budget = timeout if timeout is not None else self.settings.timeout_for(definition)
        start = time.monotonic()

        try:
            spec = self.registry.get(definition.name)
            state, result = self._execute(task_run, spec, budget, deadline)
        except RunInterruptedError as exc:
            state = RunState.CRASHED
            result = TaskResult.failure(str(exc), FailureKind.CRASH)
        except OSError as exc:
            state = RunState.CRASHED
            result = TaskResult.failure(f"failed to start task process: {exc}", FailureKind.CRASH)
        except Exception as exc:
            # Last line of containment: nothing may escape into the coordinator.
            logger.exception("Unexpected launcher error for %s", definition.name)
            state = RunState.CRASHED
            result = TaskResult.failure(f"launcher error: {exc!r}", FailureKind.CRASH)

        task_run.duration_s = time.monotonic() - start
        task_run.result = result
        self._transition(task_run, state)
        logger.info("%s finished as %s in %.3fs", definition.name, state.value, task_run.duration_s)
        return task_run

    def _execute(
        self,
        task_run: TaskRun,
        spec: LaunchSpec,
        budget: float,
        deadline: float | None,
    ) -> tuple[RunState, TaskResult]:
        # Leaving the block terminates the process, whichever branch returns.
        with self._spawned(task_run, spec) as (process, signal_fd):
            # Whichever limit binds the startup wait also names a timeout there.
            grace = self.settings.connect_timeout
            connect_limit = None
            if budget < grace:
                grace, connect_limit = budget, f"{budget:g}s timeout"
            if deadline is not None and deadline - time.monotonic() < grace:
                grace, connect_limit = max(deadline - time.monotonic(), 0.0), "run timeout"

            try:
                with connect(process, signal_fd, grace) as channel:
                    self._transition(task_run, RunState.COLLECTING)

                    task_deadline = time.monotonic() + budget
                    limit = f"{budget:g}s timeout"
                    if deadline is not None and deadline < task_deadline:
                        task_deadline = deadline
                        limit = "run timeout"

                    try:
                        result = await_result(channel, task_deadline)
                    except ResultTimeoutError:
                        logger.warning("%s exceeded %s", spec.name, limit)
                        return RunState.TIMED_OUT, TaskResult.failure(
                            f"exceeded {limit}", FailureKind.TIMEOUT
                        )

            except ConnectTimeoutError as exc:
                if connect_limit is not None:
                    logger.warning("%s exceeded %s before connecting", spec.name, connect_limit)
                    return RunState.TIMED_OUT, TaskResult.failure(
                        f"exceeded {connect_limit}", FailureKind.TIMEOUT
                    )
                return RunState.CRASHED, TaskResult.failure(
                    f"failed to connect to task process: {exc}", FailureKind.CONNECTION
                )
            except InspectionConnectionError as exc:
                return RunState.CRASHED, TaskResult.failure(
                    f"failed to connect to task process: {exc}", FailureKind.CONNECTION
                )
            except ProcessExitError as exc:
                return RunState.CRASHED, TaskResult.failure(str(exc), FailureKind.CRASH)
            except DoublePublishError as exc:
                return RunState.CRASHED, TaskResult.failure(
                    f"double publish: {exc}", FailureKind.DOUBLE_PUBLISH
                )
            except ProtocolError as exc:
                return RunState.CRASHED, TaskResult.failure(
                    f"inspection protocol error: {exc}", FailureKind.CRASH
                )

            # Give the harness a moment to exit on its own once the channel closes.
            with suppress(subprocess.TimeoutExpired):
                process.wait(CLEAN_EXIT_WAIT_S)

            return RunState.COMPLETED, result

    @contextmanager
    def _spawned(
        self, task_run: TaskRun, spec: LaunchSpec
    ) -> Iterator[tuple[subprocess.Popen, int]]:
        read_fd, write_fd = os.pipe()
        env = {**os.environ, **spec.env, protocol.SIGNAL_FD_ENV: str(write_fd)}

        try:
            with self._lock:
                if self._aborted:
                    raise RunInterruptedError("run interrupted before the task started")
                process = subprocess.Popen(
                    list(spec.argv),
                    cwd=spec.cwd,
                    env=env,
                    pass_fds=(write_fd,),
                    start_new_session=True,
                )
                self._live.add(process)
        except (OSError, RunInterruptedError):
            os.close(read_fd)
            raise
        finally:
            # The child holds its own copy; ours must go so EOF is observable.
            os.close(write_fd)

        task_run.process = process
        task_run.pid = process.pid
        self._transition(task_run, RunState.RUNNING)
        logger.debug("Spawned %s as pid %d", spec.name, process.pid)

        try:
            yield process, read_fd
        finally:
            terminate(process, self.terminate_grace, group=True)
            with self._lock:
                self._live.discard(process)
            task_run.returncode = process.returncode
            task_run.process = None

    def _transition(self, task_run: TaskRun, state: RunState) -> None:
        task_run.state = state
        if self.on_state is not None:
            self.on_state(task_run)

