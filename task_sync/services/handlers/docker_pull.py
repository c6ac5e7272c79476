"""``docker_pull``: refresh a registry image, rate limited by ``prevent_run_before``."""

from __future__ import annotations

from datetime import timedelta
from typing import cast

from task_sync.core.time import parse_timestamp, utcnow
from task_sync.services.docker_driver import ContainerCommandError
from task_sync.services.handlers import StepRun, failure, success
from task_sync.services.handlers.docker_build import task_docker_settings
from task_sync.services.step_types import DockerPullConfig
from task_sync.services.triggers import image_ids_match

PULL_COOLDOWN = timedelta(hours=6)


async def run(ctx: StepRun) -> None:
    config = cast(DockerPullConfig, ctx.config)
    task_docker = task_docker_settings(ctx)
    image_tag = config.image_tag or str(task_docker.get("image_tag") or "")
    if not image_tag:
        await ctx.record(failure("docker_pull requires an image_tag"))
        return

    not_before = parse_timestamp(config.prevent_run_before)
    if not ctx.force and not_before is not None and utcnow() < not_before:
        ctx.logger.info(
            "docker_pull.deferred",
            extra={"image_tag": image_tag, "prevent_run_before": config.prevent_run_before},
        )
        return

    reasons: list[str] = []
    if ctx.force:
        reasons.append("forced")
    try:
        current_id = await ctx.driver.resolve_image_id(image_tag)
    except ContainerCommandError as exc:
        current_id = None
        reasons.append(f"image inspection failed: {exc}")
    if not current_id:
        reasons.append("image missing")
    elif not image_ids_match(config.image_id, current_id):
        reasons.append("image id changed")
    if ctx.previous_result != "success":
        reasons.append("no prior success")
    if not reasons:
        await ctx.record_unchanged(success("image up to date", image_id=current_id))
        return

    ctx.logger.info("docker_pull.pulling", extra={"image_tag": image_tag, "reasons": reasons})
    platform = str(task_docker.get("platform") or "") or None
    try:
        await ctx.driver.pull(image_tag, platform=platform)
    except ContainerCommandError as exc:
        await ctx.record(failure(f"docker pull failed: {exc}", output=exc.output))
        return

    image_id = await ctx.driver.resolve_image_id(image_tag)
    if not image_id:
        await ctx.record(failure(f"pulled image {image_tag} could not be inspected"))
        return

    next_run = (utcnow() + PULL_COOLDOWN).isoformat(timespec="seconds") + "Z"
    updated = config.model_copy(
        update={"image_tag": image_tag, "image_id": image_id, "prevent_run_before": next_run},
    )
    await ctx.update_task_settings({"docker": {"image_tag": image_tag, "image_hash": image_id}})
    await ctx.finish(
        success("image pulled", image_id=image_id, prevent_run_before_next=next_run),
        config=updated,
    )
