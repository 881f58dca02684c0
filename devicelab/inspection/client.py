"""Observes a task process from the outside over its inspection channel."""

from __future__ import annotations

import logging
import os
import selectors
import signal
import socket
import subprocess
import time
from collections import deque
from typing import Any

from devicelab.result import ResultFormatError, TaskResult
from devicelab.runtime import protocol
from devicelab.runtime.types import DoublePublishError

from .types import (
    ConnectTimeoutError,
    InspectionConnectionError,
    ProcessExitError,
    ProtocolError,
    ResultTimeoutError,
)

logger = logging.getLogger(__name__)

# Upper bound on a single blocking wait, so a dead process is noticed even if
# it left its socket half-open.
POLL_INTERVAL_S = 0.5
EXIT_WAIT_S = 2.0
DEFAULT_TERMINATE_GRACE_S = 5.0


class InspectionChannel:
    def __init__(
        self,
        process: subprocess.Popen,
        sock: socket.socket,
        endpoint: tuple[str, int],
    ):
        self.process = process
        self.endpoint = endpoint
        self._sock = sock
        self._sock.setblocking(False)
        self._selector = selectors.DefaultSelector()
        self._selector.register(self._sock, selectors.EVENT_READ)
        self._buffer = protocol.LineBuffer()
        self._pending: deque[bytes] = deque()
        self._next_id = 1
        self._closed = False

    def __enter__(self) -> InspectionChannel:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._selector.close()
        self._sock.close()

    def call(self, method: str, deadline: float) -> Any:
        req_id = self._next_id
        self._next_id += 1

        try:
            self._sock.setblocking(True)
            self._sock.sendall(protocol.encode({"id": req_id, "method": method}))
        except OSError as exc:
            raise ProcessExitError(self._exit_code()) from exc
        finally:
            self._sock.setblocking(False)

        while True:
            reply = self._read_message(deadline)
            if reply.get("id") != req_id:
                logger.debug("Ignoring reply for request %r", reply.get("id"))
                continue

            if "error" in reply:
                error = reply["error"] if isinstance(reply["error"], dict) else {}
                kind = error.get("kind")
                message = str(error.get("message", "unknown error"))
                if kind == protocol.ERROR_DOUBLE_PUBLISH:
                    raise DoublePublishError(message)
                raise ProtocolError(f"{method} failed ({kind}): {message}")

            if "result" not in reply:
                raise ProtocolError(f"{method}: reply carries neither result nor error")

            return reply["result"]

    def _read_message(self, deadline: float) -> dict[str, Any]:
        while not self._pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ResultTimeoutError("deadline elapsed before the task published a result")

            events = self._selector.select(min(remaining, POLL_INTERVAL_S))
            if not events:
                if self.process.poll() is not None:
                    raise ProcessExitError(self.process.returncode)
                continue

            try:
                chunk = self._sock.recv(65536)
            except BlockingIOError:
                continue
            except ConnectionResetError:
                chunk = b""

            if not chunk:
                raise ProcessExitError(self._exit_code())

            try:
                self._pending.extend(self._buffer.feed(chunk))
            except protocol.FrameError as exc:
                raise ProtocolError(str(exc)) from exc

        try:
            return protocol.decode(self._pending.popleft())
        except protocol.FrameError as exc:
            raise ProtocolError(str(exc)) from exc

    def _exit_code(self) -> int | None:
        try:
            return self.process.wait(EXIT_WAIT_S)
        except subprocess.TimeoutExpired:
            return None


def connect(process: subprocess.Popen, signal_fd: int, grace: float) -> InspectionChannel:
    """Wait for the process to announce its endpoint and attach to it.

    Takes ownership of ``signal_fd``, the read end of the startup pipe.
    """
    deadline = time.monotonic() + grace
    try:
        announcement = _read_signal(process, signal_fd, deadline, grace)
    finally:
        os.close(signal_fd)

    host = announcement.get("host")
    port = announcement.get("port")
    if (
        announcement.get("event") != protocol.EVENT_LISTENING
        or not isinstance(host, str)
        or not isinstance(port, int)
    ):
        raise InspectionConnectionError(f"malformed startup signal: {announcement!r}")

    remaining = max(deadline - time.monotonic(), 0.001)
    try:
        sock = socket.create_connection((host, port), timeout=remaining)
    except OSError as exc:
        raise InspectionConnectionError(f"cannot reach {host}:{port}: {exc}") from exc

    channel = InspectionChannel(process, sock, (host, port))
    try:
        channel.call(protocol.METHOD_READY, deadline)
    except ResultTimeoutError as exc:
        channel.close()
        raise ConnectTimeoutError(f"handshake with {host}:{port} timed out") from exc
    except (ProcessExitError, ProtocolError) as exc:
        channel.close()
        raise InspectionConnectionError(f"handshake with {host}:{port} failed: {exc}") from exc

    logger.debug("Connected to pid %s at %s:%d", process.pid, host, port)
    return channel


def _read_signal(
    process: subprocess.Popen,
    signal_fd: int,
    deadline: float,
    grace: float,
) -> dict[str, Any]:
    buffer = protocol.LineBuffer()

    with selectors.DefaultSelector() as selector:
        selector.register(signal_fd, selectors.EVENT_READ)

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConnectTimeoutError(
                    f"process did not expose its inspection endpoint within {grace:g}s"
                )

            events = selector.select(min(remaining, POLL_INTERVAL_S))
            if not events:
                if process.poll() is not None:
                    raise InspectionConnectionError(
                        f"process exited with code {process.returncode} during startup"
                    )
                continue

            chunk = os.read(signal_fd, 4096)
            if not chunk:
                try:
                    code = process.wait(EXIT_WAIT_S)
                except subprocess.TimeoutExpired:
                    raise InspectionConnectionError(
                        "process closed its startup pipe without announcing an endpoint"
                    ) from None
                raise InspectionConnectionError(f"process exited with code {code} during startup")

            try:
                lines = buffer.feed(chunk)
                if lines:
                    return protocol.decode(lines[0])
            except protocol.FrameError as exc:
                raise InspectionConnectionError(f"malformed startup signal: {exc}") from exc


def await_result(channel: InspectionChannel, deadline: float) -> TaskResult:
    """Ask the task to run and block until it publishes, exits or times out."""
    payload = channel.call(protocol.METHOD_RUN_TASK, deadline)
    try:
        return TaskResult.from_json(payload)
    except ResultFormatError as exc:
        raise ProtocolError(f"task published a malformed result: {exc}") from exc


def terminate(
    process: subprocess.Popen,
    grace: float = DEFAULT_TERMINATE_GRACE_S,
    *,
    group: bool = False,
) -> None:
    """Stop ``process``. Safe to call repeatedly.

    With ``group`` the process must lead its own session; every member of that
    process group is signalled too, including helpers that outlived an
    already-exited leader.
    """
    kill = getattr(signal, "SIGKILL", signal.SIGTERM)

    if process.poll() is None:
        _send(process, signal.SIGTERM, group)
        try:
            process.wait(grace)
        except subprocess.TimeoutExpired:
            logger.warning("pid %s ignored SIGTERM for %gs, killing", process.pid, grace)
            _send(process, kill, group)
            try:
                process.wait(grace)
            except subprocess.TimeoutExpired:
                logger.error("pid %s survived SIGKILL", process.pid)

    if group:
        # The group id outlives its leader while any member is alive.
        _send(process, kill, group)


def _send(process: subprocess.Popen, sig: int, group: bool) -> None:
    try:
        if group:
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)
    except ProcessLookupError:
        pass
