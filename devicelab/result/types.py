from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class FailureKind(str, Enum):
    TASK = "task"
    TIMEOUT = "timeout"
    CRASH = "crash"
    CONNECTION = "connection"
    DOUBLE_PUBLISH = "double_publish"


class ResultFormatError(Exception):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


@dataclass(frozen=True)
class TaskResult:
    """Verdict of a single task execution.

    A success may carry measurement ``data``; a failure always carries a
    ``failure_detail`` and a ``failure_kind`` telling a task-reported failure
    apart from infrastructure ones (timeout, crash, ...).
    """

    outcome: Outcome
    data: Mapping[str, Any] = field(default_factory=dict)
    failure_detail: str | None = None
    failure_kind: FailureKind | None = None
    benchmark_score_keys: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.outcome, Outcome):
            raise ValueError(f"outcome must be an Outcome, got {self.outcome!r}")

        if not isinstance(self.data, Mapping):
            raise ValueError(f"data must be a mapping, got {type(self.data)}")

        for key in self.data:
            if not isinstance(key, str):
                raise ValueError(f"data keys must be strings, got {key!r}")

        try:
            json.dumps(dict(self.data))
        except (TypeError, ValueError) as exc:
            raise ValueError("data must be JSON-serializable") from exc

        if self.outcome is Outcome.SUCCESS:
            if self.failure_detail is not None or self.failure_kind is not None:
                raise ValueError("a successful result cannot carry failure details")
        else:
            if not isinstance(self.failure_detail, str) or not self.failure_detail.strip():
                raise ValueError("a failed result needs a non-empty failure_detail")
            if not isinstance(self.failure_kind, FailureKind):
                raise ValueError("a failed result needs a failure_kind")
            if self.benchmark_score_keys:
                raise ValueError("benchmark scores are only reported on success")

        for key in self.benchmark_score_keys:
            if key not in self.data:
                raise ValueError(f"benchmark score key '{key}' is missing from data")
            value = self.data[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"benchmark score '{key}' must be a number, got {value!r}")

        # Freeze the caller's mapping so the record stays immutable.
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))
        object.__setattr__(self, "benchmark_score_keys", tuple(self.benchmark_score_keys))

    @classmethod
    def success(
        cls,
        data: Mapping[str, Any] | None = None,
        benchmark_score_keys: tuple[str, ...] | list[str] = (),
    ) -> TaskResult:
        return cls(
            Outcome.SUCCESS,
            data=dict(data or {}),
            benchmark_score_keys=tuple(benchmark_score_keys),
        )

    @classmethod
    def success_from_file(
        cls,
        path: str | Path,
        benchmark_score_keys: tuple[str, ...] | list[str] = (),
    ) -> TaskResult:
        """Build a success whose data is the JSON object stored at ``path``."""
        file_path = Path(path)
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ResultFormatError(f"{file_path}: invalid JSON") from exc

        if not isinstance(data, Mapping):
            raise ResultFormatError(f"{file_path}: top-level value is not an object")

        return cls.success(data, benchmark_score_keys)

    @classmethod
    def failure(
        cls,
        detail: str,
        kind: FailureKind = FailureKind.TASK,
        data: Mapping[str, Any] | None = None,
    ) -> TaskResult:
        return cls(
            Outcome.FAILURE,
            data=dict(data or {}),
            failure_detail=detail,
            failure_kind=kind,
        )

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def to_json(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "data": json.loads(json.dumps(dict(self.data))),
            "failure_detail": self.failure_detail,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "benchmark_score_keys": list(self.benchmark_score_keys),
        }

    @classmethod
    def from_json(cls, raw: Any) -> TaskResult:
        if not isinstance(raw, Mapping):
            raise ResultFormatError(f"result must be an object, got {type(raw)}")

        try:
            outcome = Outcome(raw.get("outcome"))
        except ValueError as exc:
            raise ResultFormatError(f"unknown outcome: {raw.get('outcome')!r}") from exc

        kind = raw.get("failure_kind")
        try:
            failure_kind = FailureKind(kind) if kind is not None else None
        except ValueError as exc:
            raise ResultFormatError(f"unknown failure kind: {kind!r}") from exc

        keys = raw.get("benchmark_score_keys") or []
        if not isinstance(keys, list):
            raise ResultFormatError("benchmark_score_keys must be a list")

        try:
            return cls(
                outcome,
                data=raw.get("data") or {},
                failure_detail=raw.get("failure_detail"),
                failure_kind=failure_kind,
                benchmark_score_keys=tuple(keys),
            )
        except ValueError as exc:
            raise ResultFormatError(str(exc)) from exc
