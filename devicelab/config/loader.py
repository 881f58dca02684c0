import json
import tomllib
from pathlib import Path
from typing import Any, Mapping

import yaml

from .types import (
    Manifest,
    ManifestError,
    RunSettings,
    TaskDefinition,
    UnsupportedManifestFormatError,
)

TASK_KEYS = {
    "description",
    "stage",
    "required_agent_capabilities",
    "flaky",
    "timeout",
    "entry",
    "device",
    "env",
}
SETTINGS_KEYS = {"task_timeout", "connect_timeout", "jobs", "run_timeout"}


def load_manifest(path: str | Path) -> Manifest:
    pure_path = Path(path).expanduser().resolve()

    if not pure_path.exists():
        raise ManifestError(f"Manifest file not found: {pure_path}")

    if not pure_path.is_file():
        raise ManifestError(f"Manifest path is not a file: {pure_path}")

    fmt = _detect_format(pure_path)
    raw_file = _parse_file(pure_path, fmt)
    return _build_manifest(raw_file, pure_path.parent)


def _detect_format(path: Path) -> str:
    fmt = path.suffix
    match fmt:
        case ".yaml" | ".yml":
            return "yaml"
        case ".toml":
            return "toml"
        case ".json":
            return "json"
        case _:
            raise UnsupportedManifestFormatError(
                f"Non supported file extension: {fmt}\n Expected format: .yml/.yaml, .toml, .json"
            )


def _parse_file(path: Path, fmt: str) -> Mapping[str, Any]:
    match fmt:
        case "yaml":
            return _parse_yaml(path)
        case "toml":
            return _parse_toml(path)
        case "json":
            return _parse_json(path)
        case _:
            raise AssertionError("Unreachable")


def _parse_yaml(path: Path) -> Mapping[str, Any]:
    try:
        raw_file = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ManifestError(f"{path}: invalid YAML") from exc

    return _require_mapping(path, "YAML", raw_file)


def _parse_toml(path: Path) -> Mapping[str, Any]:
    try:
        raw_file = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError(f"{path}: invalid TOML") from exc

    return _require_mapping(path, "TOML", raw_file)


def _parse_json(path: Path) -> Mapping[str, Any]:
    try:
        raw_file = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ManifestError(f"{path}: invalid JSON") from exc

    return _require_mapping(path, "JSON", raw_file)


def _require_mapping(path: Path, fmt: str, raw_file: Any) -> Mapping[str, Any]:
    if not isinstance(raw_file, Mapping):
        raise ManifestError(
            f"{path}: {fmt} parsed successfully but top-level value is not an object: {type(raw_file)}"
        )

    return raw_file


def _build_manifest(raw: Mapping[str, Any], base_dir: Path) -> Manifest:
    tasks: dict[str, TaskDefinition] = {}

    if "tasks" not in raw:
        raise ManifestError("Missing 'tasks' field")

    if not isinstance(raw["tasks"], Mapping):
        raise ManifestError(f"'tasks' must be a mapping, got {type(raw['tasks'])}")

    if len(raw["tasks"]) < 1:
        raise ManifestError("There must be at least one task in the manifest")

    for name, fields in raw["tasks"].items():
        if not isinstance(name, str):
            raise ManifestError(f"Task name must be a string, got {type(name)}")

        if not isinstance(fields, Mapping):
            raise ManifestError(f"{name} must be a mapping")

        name_norm = name.strip()

        if len(name_norm) < 1:
            raise ManifestError("A task name can't be empty")

        if name_norm in tasks:
            raise ManifestError(f"Duplicate task name after normalization: {name_norm}")

        tasks[name_norm] = _build_task_definition(name_norm, fields)

    settings = _build_settings(raw.get("settings", {}))

    return Manifest(tasks=tasks, settings=settings, base_dir=base_dir)


def _build_task_definition(name: str, fields: Mapping[str, Any]) -> TaskDefinition:
    for key in fields.keys():
        if key not in TASK_KEYS:
            raise ManifestError(f"{name}: Can't process: {key}")

    description = _required_string(name, fields, "description")
    stage = _required_string(name, fields, "stage")

    capabilities: set[str] = set()
    if "required_agent_capabilities" in fields:
        raw_caps = fields["required_agent_capabilities"]
        if not isinstance(raw_caps, list):
            raise ManifestError(f"{name}: required_agent_capabilities should be a list")

        for item in raw_caps:
            if not isinstance(item, str):
                raise ManifestError(f"{name}: capability {item!r} should be a string")

            cap = item.strip()
            if len(cap) < 1:
                raise ManifestError(f"{name}: A capability is empty")

            capabilities.add(cap)

    flaky = fields.get("flaky", False)
    if not isinstance(flaky, bool):
        raise ManifestError(f"{name}: flaky should be true or false")

    timeout = None
    if "timeout" in fields:
        timeout = _positive_number(name, "timeout", fields["timeout"])

    entry = _optional_string(name, fields, "entry")
    device = _optional_string(name, fields, "device")

    env = {}
    if "env" in fields:
        if not isinstance(fields["env"], Mapping):
            raise ManifestError(f"{name}: Env should be a mapping")

        for key, item in fields["env"].items():
            if not isinstance(key, str):
                raise ManifestError(f"{name}: {key} should be a string")

            if len(key.strip()) < 1:
                raise ManifestError(f"{name}: A key can't be empty")

            if not isinstance(item, str):
                raise ManifestError(f"{name}: {item} should be a string")

            env[key.strip()] = item

    return TaskDefinition(
        name=name,
        description=description,
        stage=stage,
        required_capabilities=frozenset(capabilities),
        entry=entry,
        timeout=timeout,
        flaky=flaky,
        device=device,
        env=env,
    )


def _build_settings(raw: Any) -> RunSettings:
    if not isinstance(raw, Mapping):
        raise ManifestError(f"'settings' must be a mapping, got {type(raw)}")

    for key in raw.keys():
        if key not in SETTINGS_KEYS:
            raise ManifestError(f"settings: Can't process: {key}")

    settings = RunSettings()

    if "task_timeout" in raw:
        settings.task_timeout = _positive_number("settings", "task_timeout", raw["task_timeout"])

    if "connect_timeout" in raw:
        settings.connect_timeout = _positive_number(
            "settings", "connect_timeout", raw["connect_timeout"]
        )

    if "run_timeout" in raw:
        settings.run_timeout = _positive_number("settings", "run_timeout", raw["run_timeout"])

    if "jobs" in raw:
        jobs = raw["jobs"]
        if isinstance(jobs, bool) or not isinstance(jobs, int) or jobs < 1:
            raise ManifestError(f"settings: jobs should be a positive integer, got {jobs!r}")
        settings.jobs = jobs

    return settings


def _required_string(name: str, fields: Mapping[str, Any], key: str) -> str:
    if key not in fields:
        raise ManifestError(f"{name}: missing '{key}'")

    value = fields[key]
    if not isinstance(value, str):
        raise ManifestError(f"{name}: The {key} should be a string")

    if len(value.strip()) < 1:
        raise ManifestError(f"{name}: {key} is empty")

    return value.strip()


def _optional_string(name: str, fields: Mapping[str, Any], key: str) -> str | None:
    if key not in fields:
        return None

    return _required_string(name, fields, key)


def _positive_number(owner: str, key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ManifestError(f"{owner}: {key} should be a number, got {value!r}")

    if value <= 0:
        raise ManifestError(f"{owner}: {key} should be positive, got {value!r}")

    return float(value)
