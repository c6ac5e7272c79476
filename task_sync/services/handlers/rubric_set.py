"""``rubric_set``: expand a rubric file into one ``rubric_shell`` child per criterion."""

from __future__ import annotations

from typing import Any, cast

from task_sync.services.criteria import CriteriaParseError
from task_sync.services.handlers import StepRun, failure, success
from task_sync.services.step_types import Assignment, RubricSetConfig
from task_sync.services.triggers import TriggerState

SOLUTION_PREFIX = "solution"


def assignments_from_containers_map(containers_map: Any) -> dict[str, str]:
    """Map ``solutionN.patch`` to the container recorded for ``solutionN``."""
    if not isinstance(containers_map, dict):
        return {}
    assigned: dict[str, str] = {}
    for key in sorted(containers_map):
        entry = containers_map[key]
        if not key.startswith(SOLUTION_PREFIX) or not isinstance(entry, dict):
            continue
        container = str(entry.get("container_name") or "").strip()
        if container:
            assigned[f"{key}.patch"] = container
    return assigned


async def run(ctx: StepRun) -> None:
    config = cast(RubricSetConfig, ctx.config)
    if not config.file:
        await ctx.record(failure("rubric_set requires a rubric file"))
        return

    watched = {config.file: config.files.get(config.file, ""), **config.files}
    decision = await ctx.triggers.should_run(
        ctx.base_path,
        TriggerState.from_triggers(config.triggers, files=watched),
        force=ctx.force,
    )
    if not decision.should_run:
        await ctx.record_unchanged(success("rubric unchanged"))
        return

    assign_containers = dict(config.assign_containers) or assignments_from_containers_map(
        ctx.task_settings.get("containers_map"),
    )
    if not assign_containers:
        await ctx.record(failure("no container assignments available for rubric_set"))
        return

    try:
        criteria = ctx.extractor.parse(ctx.base_path / config.file)
    except CriteriaParseError as exc:
        ctx.logger.warning("rubric_set.parse_failed", extra={"error": str(exc)})
        await ctx.record(failure(str(exc)))
        return

    refreshed = ctx.triggers.refresh_file_hashes(ctx.base_path, watched)
    # Children watch the solution and test patches, never the rubric itself.
    child_files = {name: digest for name, digest in refreshed.items() if name != config.file}
    assignments = [
        Assignment(patch=patch, container=container) for patch, container in sorted(assign_containers.items())
    ]
    outcome = await ctx.reconciler.reconcile(
        ctx.step,
        criteria,
        force=ctx.force,
        assignments=assignments,
        files=child_files,
    )
    updated = config.model_copy(update={"files": refreshed, "assign_containers": assign_containers})
    await ctx.finish(
        success(
            f"reconciled {len(criteria)} criteria",
            created=outcome.created,
            updated=outcome.updated,
            deleted=outcome.deleted,
        ),
        config=updated,
    )
