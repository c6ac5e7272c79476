"""``docker_build``: build the task image when its identity or inputs changed."""

from __future__ import annotations

from typing import Any, cast

from task_sync.services.docker_driver import ContainerCommandError
from task_sync.services.handlers import StepRun, failure, success
from task_sync.services.step_types import DockerBuildConfig
from task_sync.services.triggers import TriggerState

IMAGE_TAG_PLACEHOLDER = "%%IMAGETAG%%"


def task_docker_settings(ctx: StepRun) -> dict[str, Any]:
    docker = ctx.task_settings.get("docker")
    return dict(docker) if isinstance(docker, dict) else {}


def default_image_tag(step_id: int) -> str:
    return f"task-sync-step-{step_id}"


async def run(ctx: StepRun) -> None:
    config = cast(DockerBuildConfig, ctx.config)
    task_docker = task_docker_settings(ctx)
    image_tag = config.image_tag or str(task_docker.get("image_tag") or "") or default_image_tag(ctx.step_id)
    expected_id = config.image_id or str(task_docker.get("image_hash") or "")

    if not ctx.task.local_path:
        await ctx.record(failure("docker_build requires the task local_path as build context"))
        return

    decision = await ctx.triggers.should_run(
        ctx.base_path,
        TriggerState(files=dict(config.files), image_tag=image_tag, image_id=expected_id),
        force=ctx.force,
    )
    if not decision.should_run:
        await ctx.record_unchanged(success("image up to date", image_id=expected_id, image_tag=image_tag))
        return

    parameters = [parameter.replace(IMAGE_TAG_PLACEHOLDER, image_tag) for parameter in config.parameters]
    platform = str(task_docker.get("platform") or "") or None
    ctx.logger.info("docker_build.building", extra={"image_tag": image_tag, "reasons": list(decision.reasons)})
    try:
        await ctx.driver.build(image_tag, ctx.base_path, parameters=parameters, platform=platform)
    except ContainerCommandError as exc:
        await ctx.record(failure(f"docker build failed: {exc}", output=exc.output))
        return

    image_id = await ctx.driver.resolve_image_id(image_tag)
    if not image_id:
        await ctx.record(failure(f"built image {image_tag} could not be inspected"))
        return

    updated = config.model_copy(
        update={
            "image_tag": image_tag,
            "image_id": image_id,
            "files": ctx.triggers.refresh_file_hashes(ctx.base_path, config.files),
        },
    )
    await ctx.update_task_settings({"docker": {"image_tag": image_tag, "image_hash": image_id}})
    await ctx.finish(success("image built", image_id=image_id, image_tag=image_tag), config=updated)
