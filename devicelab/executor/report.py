from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol, TextIO

from .types import RunReport


class ResultSink(Protocol):
    """Receives the final report, e.g. to forward it to a dashboard."""

    def submit(self, report: RunReport) -> None: ...


class JsonFileSink:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def submit(self, report: RunReport) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(report.to_json(), indent=2) + "\n", encoding="utf-8")


def print_summary(report: RunReport, out: TextIO) -> None:
    for name in report.order:
        result = report.results[name]
        flaky = " (flaky)" if name in report.flaky else ""
        if result.succeeded:
            print(f"OK {name}{flaky}", file=out)
        else:
            print(f"FAIL {name}{flaky}: {result.failure_detail}", file=out)

    if report.failed:
        print("Failed tasks: " + ", ".join(report.failed), file=out)
