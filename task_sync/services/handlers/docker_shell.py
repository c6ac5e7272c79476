"""``docker_shell``: run labelled commands in the running container for an image."""

from __future__ import annotations

from typing import Any, cast

from task_sync.services.docker_driver import ContainerCommandError
from task_sync.services.handlers import StepRun, failure, success
from task_sync.services.handlers.docker_build import task_docker_settings
from task_sync.services.step_store import StepNotFoundError
from task_sync.services.step_types import (
    DockerBuildConfig,
    DockerPullConfig,
    DockerShellConfig,
    StepConfig,
    StepSettingsError,
    parse_step_settings,
)
from task_sync.services.triggers import image_ids_match


def _image_details(config: StepConfig) -> tuple[str, str]:
    if isinstance(config, DockerBuildConfig | DockerPullConfig):
        return config.image_id, config.image_tag
    if isinstance(config, DockerShellConfig):
        return config.docker.image_id, config.docker.image_tag
    return "", ""


async def find_image_details(ctx: StepRun, step_id: int, visited: set[int]) -> tuple[str, str]:
    """Walk ``depends_on`` depth-first for the first step carrying both image id and tag."""
    if step_id in visited:
        ctx.logger.warning("docker_shell.dependency_cycle", extra={"dependency_id": step_id})
        return "", ""
    visited.add(step_id)
    try:
        step = await ctx.store.get(step_id)
    except StepNotFoundError:
        ctx.logger.warning("docker_shell.dependency_missing", extra={"dependency_id": step_id})
        return "", ""
    try:
        parsed = parse_step_settings(step.settings)
    except StepSettingsError:
        return "", ""
    image_id, image_tag = _image_details(parsed.config)
    if image_id and image_tag:
        return image_id, image_tag
    for dependency_id in parsed.config.dependency_ids():
        image_id, image_tag = await find_image_details(ctx, dependency_id, visited)
        if image_id and image_tag:
            return image_id, image_tag
    return "", ""


async def resolve_image(ctx: StepRun, config: DockerShellConfig) -> tuple[str, str]:
    image_id, image_tag = config.docker.image_id, config.docker.image_tag
    if image_id and image_tag:
        return image_id, image_tag
    visited = {ctx.step_id}
    for dependency_id in config.dependency_ids():
        found_id, found_tag = await find_image_details(ctx, dependency_id, visited)
        if found_id and found_tag:
            return found_id, found_tag
    task_docker = task_docker_settings(ctx)
    return (
        image_id or str(task_docker.get("image_hash") or ""),
        image_tag or str(task_docker.get("image_tag") or ""),
    )


async def run(ctx: StepRun) -> None:
    config = cast(DockerShellConfig, ctx.config)
    image_id, image_tag = await resolve_image(ctx, config)
    if not image_id or not image_tag:
        await ctx.record(failure("docker_shell settings must resolve both an image_tag and an image_id"))
        return

    try:
        container_id = await ctx.driver.find_container_by_ancestor(image_tag)
        actual_id = await ctx.driver.container_image_id(container_id) if container_id else ""
    except ContainerCommandError as exc:
        await ctx.record(failure(f"failed to find running container for image {image_tag}: {exc}"))
        return
    if not container_id:
        await ctx.record(failure(f"no running container for image {image_tag}"))
        return
    if not actual_id.startswith(image_id):
        await ctx.record(
            failure(f"image hash mismatch for {image_tag}. Expected prefix '{image_id}', got '{actual_id}'"),
        )
        return

    reasons: list[str] = []
    if ctx.force:
        reasons.append("forced")
    if config.triggers.image_tag != image_tag or not image_ids_match(config.triggers.image_id, actual_id):
        reasons.append("image identity changed")
    file_fired, file_reasons, _ = ctx.triggers.file_signal(ctx.base_path, config.files)
    if file_fired:
        reasons.extend(file_reasons)
    if ctx.previous_result != "success":
        reasons.append("no prior success")
    if not reasons:
        await ctx.record_unchanged(success("commands up to date"))
        return

    outputs: list[dict[str, Any]] = []
    errors: list[str] = []
    for entry in config.command:
        for label, command in entry.items():
            ctx.logger.info("docker_shell.exec", extra={"label": label, "container": container_id})
            try:
                result = await ctx.driver.exec_shell(container_id, command)
            except ContainerCommandError as exc:
                message = f"failed to execute command '{command}': {exc}"
                errors.append(message)
                outputs.append({"label": label, "output": exc.output, "error": message})
                continue
            if not result.ok:
                message = f"command '{command}' exited {result.returncode}"
                errors.append(message)
                outputs.append({"label": label, "output": result.output, "error": message})
                continue
            outputs.append({"label": label, "output": result.stdout.strip(), "error": ""})

    if errors:
        await ctx.record(failure("one or more shell commands failed", outputs=outputs))
        return
    updated = config.model_copy(
        update={
            "files": ctx.triggers.refresh_file_hashes(ctx.base_path, config.files),
            "triggers": config.triggers.model_copy(update={"image_id": actual_id, "image_tag": image_tag}),
        },
    )
    await ctx.finish(success("all shell commands executed successfully", outputs=outputs), config=updated)
