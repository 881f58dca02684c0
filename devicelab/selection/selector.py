from __future__ import annotations

import logging

from devicelab.config.types import Manifest, TaskDefinition

from .types import SelectionRequest, UnknownTaskError

logger = logging.getLogger(__name__)


def select_tasks(manifest: Manifest, request: SelectionRequest) -> list[TaskDefinition]:
    """Filter the manifest down to the tasks this agent should run.

    The result keeps manifest declaration order regardless of the order in
    which names were requested.
    """
    names = frozenset() if request.run_all else request.names

    unknown = sorted(name for name in names if not manifest.has_task(name))
    if unknown:
        raise UnknownTaskError(unknown)

    selected: list[TaskDefinition] = []
    for task in manifest:
        if names and task.name not in names:
            continue

        if request.stage and task.stage != request.stage:
            continue

        if not task.required_capabilities <= request.capabilities:
            missing = sorted(task.required_capabilities - request.capabilities)
            logger.info("Skipping %s: agent lacks %s", task.name, ", ".join(missing))
            continue

        if request.skip_flaky and task.flaky:
            logger.info("Skipping %s: marked flaky", task.name)
            continue

        selected.append(task)

    return selected
