from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SelectionRequest:
    names: frozenset[str] = frozenset()
    stage: str | None = None
    capabilities: frozenset[str] = frozenset()
    run_all: bool = False
    skip_flaky: bool = False


class SelectionError(Exception):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class UnknownTaskError(SelectionError):
    def __init__(self, names: list[str]):
        super().__init__("Unknown task: " + ", ".join(names))
        self.names = names
