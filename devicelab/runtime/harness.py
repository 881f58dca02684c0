"""Hosts exactly one task body inside a disposable child process.

A task script registers its body with :func:`task`. When launched by the
runner, the harness announces a loopback endpoint on the startup pipe, waits
for the parent to connect and runs the body when asked to. The result is
published at most once; an exception escaping the body makes the process exit
non-zero without publishing anything.
"""

from __future__ import annotations

import json
import logging
import os
import socket
from typing import Any, Callable, NoReturn

from devicelab.logging_utils import configure_logging
from devicelab.result import TaskResult

from . import protocol
from .types import DoublePublishError, HarnessError, TaskAlreadyRegisteredError

logger = logging.getLogger(__name__)

TaskBody = Callable[[], "TaskResult | None"]

EXIT_OK = 0
EXIT_CRASHED = 1
EXIT_NO_CLIENT = 3

DEFAULT_LINGER_S = 30.0
DEFAULT_ACCEPT_TIMEOUT_S = 120.0

_active: TaskHarness | None = None


class TaskHarness:
    def __init__(
        self,
        body: TaskBody,
        *,
        linger: float = DEFAULT_LINGER_S,
        accept_timeout: float = DEFAULT_ACCEPT_TIMEOUT_S,
    ):
        self._body = body
        self.linger = linger
        self.accept_timeout = accept_timeout
        self._ran = False
        self._published = False
        self._reported: TaskResult | None = None
        self._double_publish: DoublePublishError | None = None

    @property
    def published(self) -> bool:
        return self._published

    def report(self, result: TaskResult) -> None:
        if not isinstance(result, TaskResult):
            raise TypeError(f"report() expects a TaskResult, got {type(result)}")

        if self._reported is not None or self._published:
            err = DoublePublishError("task reported more than one result")
            self._double_publish = err
            raise err

        self._reported = result

    def execute(self) -> TaskResult:
        """Run the body once and return the single result it produced."""
        if self._ran:
            raise DoublePublishError("task body already ran in this process")
        self._ran = True

        returned = self._body()

        # A second report() may have been swallowed by the body.
        if self._double_publish is not None:
            raise self._double_publish

        if returned is None:
            if self._reported is None:
                raise TypeError("task body returned None without reporting a result")
            return self._reported

        if not isinstance(returned, TaskResult):
            raise TypeError(f"task body returned {type(returned)}, expected TaskResult")

        if self._reported is not None:
            raise DoublePublishError("task both reported and returned a result")

        return returned

    def publish(self, result: TaskResult) -> dict[str, Any]:
        if self._published:
            raise DoublePublishError("a result was already published by this process")
        self._published = True
        return result.to_json()

    def run_standalone(self) -> int:
        result = self.execute()
        print(json.dumps(self.publish(result), indent=2))
        return EXIT_OK if result.succeeded else EXIT_CRASHED

    def serve(self, signal_fd: int) -> int:
        with socket.create_server(("127.0.0.1", 0)) as server:
            host, port = server.getsockname()[:2]
            self._signal(signal_fd, host, port)

            server.settimeout(self.accept_timeout)
            try:
                conn, _ = server.accept()
            except TimeoutError:
                logger.error("No inspection client connected within %ss", self.accept_timeout)
                return EXIT_NO_CLIENT

        with conn:
            conn.settimeout(None)
            return self._handle(conn)

    def _signal(self, signal_fd: int, host: str, port: int) -> None:
        announcement = {
            "event": protocol.EVENT_LISTENING,
            "host": host,
            "port": port,
            "pid": os.getpid(),
        }
        with os.fdopen(signal_fd, "wb") as pipe:
            pipe.write(protocol.encode(announcement))
        logger.debug("Inspection endpoint listening on %s:%d", host, port)

    def _handle(self, conn: socket.socket) -> int:
        buffer = protocol.LineBuffer()

        while True:
            try:
                chunk = conn.recv(65536)
            except TimeoutError:
                logger.debug("Linger expired after publishing, exiting")
                return EXIT_OK

            if not chunk:
                return EXIT_OK

            for line in buffer.feed(chunk):
                reply = self._dispatch(line)
                conn.sendall(protocol.encode(reply))

            if self._published:
                conn.settimeout(self.linger)

    def _dispatch(self, line: bytes) -> dict[str, Any]:
        try:
            request = protocol.decode(line)
        except protocol.FrameError as exc:
            return _error(None, protocol.ERROR_BAD_REQUEST, str(exc))

        req_id = request.get("id")
        method = request.get("method")

        if method == protocol.METHOD_READY:
            return {"id": req_id, "result": {"ready": True}}

        if method == protocol.METHOD_RUN_TASK:
            try:
                payload = self.publish(self.execute())
            except DoublePublishError as exc:
                logger.error("Double publish: %s", exc)
                return _error(req_id, protocol.ERROR_DOUBLE_PUBLISH, str(exc))
            return {"id": req_id, "result": payload}

        return _error(req_id, protocol.ERROR_UNKNOWN_METHOD, f"unknown method: {method!r}")


def _error(req_id: Any, kind: str, message: str) -> dict[str, Any]:
    return {"id": req_id, "error": {"kind": kind, "message": message}}


def task(body: TaskBody, *, linger: float = DEFAULT_LINGER_S) -> NoReturn:
    """Register ``body`` as this process's task and run it to completion.

    Never returns: the process exits with 0 once the result has been
    collected, or with a non-zero status if the body failed to produce one.
    """
    global _active

    if _active is not None:
        raise TaskAlreadyRegisteredError("a task is already registered in this process")

    configure_logging()
    harness = TaskHarness(body, linger=linger)
    _active = harness

    raw_fd = os.environ.get(protocol.SIGNAL_FD_ENV)
    try:
        if raw_fd is None:
            code = harness.run_standalone()
        else:
            code = harness.serve(int(raw_fd))
    except Exception:
        logger.exception("Task failed without reporting a result")
        code = EXIT_CRASHED

    raise SystemExit(code)


def report(result: TaskResult) -> None:
    """Publish ``result`` from inside a running task body."""
    if _active is None:
        raise HarnessError("report() called outside of a registered task")
    _active.report(result)
