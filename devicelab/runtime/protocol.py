"""Wire format shared by the task harness and the inspection client.

Both directions use one JSON object per line. The child announces its
endpoint on a startup pipe whose descriptor is passed through
``SIGNAL_FD_ENV``; requests and replies then travel over a loopback socket.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

SIGNAL_FD_ENV = "DEVICELAB_SIGNAL_FD"

EVENT_LISTENING = "listening"

METHOD_READY = "ready"
METHOD_RUN_TASK = "run_task"

ERROR_DOUBLE_PUBLISH = "double_publish"
ERROR_UNKNOWN_METHOD = "unknown_method"
ERROR_BAD_REQUEST = "bad_request"

MAX_LINE_BYTES = 16 * 1024 * 1024


class FrameError(Exception):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


def encode(message: Mapping[str, Any]) -> bytes:
    return json.dumps(dict(message), separators=(",", ":")).encode("utf-8") + b"\n"


def decode(line: bytes) -> dict[str, Any]:
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FrameError(f"invalid frame: {line[:80]!r}") from exc

    if not isinstance(message, dict):
        raise FrameError(f"frame must be an object, got {type(message)}")

    return message


class LineBuffer:
    """Accumulates raw bytes and yields complete lines."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buf.extend(chunk)
        lines: list[bytes] = []
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                break
            lines.append(bytes(self._buf[:idx]))
            del self._buf[: idx + 1]

        if len(self._buf) > MAX_LINE_BYTES:
            raise FrameError("frame exceeds maximum size")

        return lines
