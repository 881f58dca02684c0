from __future__ import annotations

import argparse


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return number


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an integer: {value}") from exc
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value}")
    return number


def _selection_parent() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "-t",
        "--task",
        dest="tasks",
        action="append",
        default=[],
        help="Task name to run (repeatable)",
    )
    parent.add_argument("-s", "--stage", help="Only tasks of this stage")
    parent.add_argument(
        "-a",
        "--all",
        dest="run_all",
        action="store_true",
        help="Ignore --task and take every task matching the other filters",
    )
    parent.add_argument(
        "-c",
        "--capability",
        dest="capabilities",
        action="append",
        default=[],
        help="Capability of this agent (repeatable)",
    )
    parent.add_argument(
        "--skip-flaky",
        action="store_true",
        help="Leave out tasks marked flaky in the manifest",
    )
    return parent


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devicelab")

    parser.add_argument(
        "--manifest",
        default="manifest.yaml",
        help="Path to manifest file",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        required=True,
    )
    selection = _selection_parent()

    # run
    run = subparsers.add_parser("run", parents=[selection], help="Run tasks")
    run.add_argument("--timeout", type=_positive_float, help="Per-task timeout in seconds")
    run.add_argument(
        "--connect-timeout",
        type=_positive_float,
        help="Seconds a task process has to expose its inspection endpoint",
    )
    run.add_argument("--jobs", type=_positive_int, help="Tasks to run in parallel")
    run.add_argument("--run-timeout", type=_positive_float, help="Deadline for the whole run")
    run.add_argument("--report", help="Write the JSON report to this path")

    # list
    subparsers.add_parser("list", parents=[selection], help="List selected tasks")

    return parser
