"""``rubrics_import``: parse the rubric file into the task's criterion hash map."""

from __future__ import annotations

from typing import cast

from task_sync.services.criteria import CriteriaParseError
from task_sync.services.handlers import StepRun, failure, skipped, success
from task_sync.services.reconciler import TASK_HASH_MAP_KEY
from task_sync.services.step_types import RubricsImportConfig
from task_sync.services.triggers import TriggerState


async def run(ctx: StepRun) -> None:
    config = cast(RubricsImportConfig, ctx.config)
    rubric_path = config.rubric_path()
    if not rubric_path:
        await ctx.record(failure("rubrics_import requires json_file or md_file"))
        return

    watched = dict(config.triggers.files) or {rubric_path: ""}
    decision = await ctx.triggers.should_run(
        ctx.base_path,
        TriggerState.from_triggers(config.triggers, files=watched),
        force=ctx.force,
    )
    if not decision.should_run:
        await ctx.record_unchanged(skipped("rubric file unchanged"))
        return

    try:
        criteria = ctx.extractor.parse(ctx.base_path / rubric_path)
    except CriteriaParseError as exc:
        ctx.logger.warning("rubrics_import.parse_failed", extra={"error": str(exc)})
        await ctx.record(failure(str(exc)))
        return

    hashes = {criterion.title: ctx.hasher.criterion_hash(criterion) for criterion in criteria}
    await ctx.update_task_settings({TASK_HASH_MAP_KEY: hashes})

    refreshed = ctx.triggers.refresh_file_hashes(ctx.base_path, watched)
    updated = config.model_copy(
        update={"triggers": config.triggers.model_copy(update={"files": refreshed})},
    )
    ctx.logger.info("rubrics_import.imported", extra={"criteria": len(criteria)})
    await ctx.finish(
        success(f"imported {len(criteria)} criteria", criteria=sorted(hashes)),
        config=updated,
    )
