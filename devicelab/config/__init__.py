from .loader import load_manifest
from .registry import LaunchSpec, TaskRegistry
from .types import (
    Manifest,
    ManifestError,
    RunSettings,
    TaskDefinition,
    UnsupportedManifestFormatError,
)

__all__ = [
    "load_manifest",
    "Manifest",
    "TaskDefinition",
    "RunSettings",
    "TaskRegistry",
    "LaunchSpec",
    "ManifestError",
    "UnsupportedManifestFormatError",
]
