from __future__ import annotations

import argparse
import dataclasses
import os
import sys

from devicelab.config import (
    Manifest,
    ManifestError,
    RunSettings,
    TaskDefinition,
    TaskRegistry,
    load_manifest,
)
from devicelab.executor import Coordinator, JsonFileSink, Launcher, print_summary
from devicelab.logging_utils import configure_logging
from devicelab.selection import SelectionError, SelectionRequest, select_tasks

from .args import build_parser

CAPABILITIES_ENV = "DEVICELAB_AGENT_CAPABILITIES"


def run_cli(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
        configure_logging(args.verbose)

        match args.command:
            case "run":
                return cmd_run(args)
            case "list":
                return cmd_list(args)
            case _:
                return 2

    except (ManifestError, SelectionError) as exc:
        print(str(exc), file=sys.stderr)
        return 2

    except KeyboardInterrupt:
        return 130


def main() -> None:
    raise SystemExit(run_cli())


def cmd_run(args: argparse.Namespace) -> int:
    manifest = load_manifest(args.manifest)
    queue = _select(manifest, args)

    registry = TaskRegistry.from_manifest(manifest)
    registry.validate(task.name for task in queue)

    if not queue:
        print("No tasks selected", file=sys.stderr)
        return 0

    settings = _settings(manifest.settings, args)
    sinks = [JsonFileSink(args.report)] if args.report else []
    coordinator = Coordinator(Launcher(registry, settings), settings, sinks=sinks)

    report = coordinator.run(queue)
    print_summary(report, sys.stdout)
    return report.exit_code


def cmd_list(args: argparse.Namespace) -> int:
    manifest = load_manifest(args.manifest)
    for task in _select(manifest, args):
        print(f"{task.name}\t{task.stage}\t{task.description}")
    return 0


def agent_capabilities(cli_capabilities: list[str]) -> frozenset[str]:
    caps = {cap.strip() for cap in cli_capabilities if cap.strip()}
    raw = os.environ.get(CAPABILITIES_ENV, "")
    caps.update(cap.strip() for cap in raw.split(",") if cap.strip())
    return frozenset(caps)


def _select(manifest: Manifest, args: argparse.Namespace) -> list[TaskDefinition]:
    request = SelectionRequest(
        names=frozenset(name.strip() for name in args.tasks),
        stage=args.stage,
        capabilities=agent_capabilities(args.capabilities),
        run_all=args.run_all,
        skip_flaky=args.skip_flaky,
    )
    return select_tasks(manifest, request)


def _settings(base: RunSettings, args: argparse.Namespace) -> RunSettings:
    overrides = {
        "task_timeout": args.timeout,
        "connect_timeout": args.connect_timeout,
        "jobs": args.jobs,
        "run_timeout": args.run_timeout,
    }
    return dataclasses.replace(
        base, **{key: value for key, value in overrides.items() if value is not None}
    )
