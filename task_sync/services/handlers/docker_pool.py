"""``docker_pool``: keep one running container per tree the rubric steps grade.

Keys are ``original``, ``golden`` and ``solution1..N``. Each container mounts
its host folder under the task ``local_path`` at ``app_folder``:

- ``original`` -> ``<local_path>/original``
- ``golden`` -> ``<local_path>/volume_golden``
- ``solutionN`` -> ``<local_path>/volume_solutionN``

The resulting ``containers_map`` is written to the task settings, where
``rubric_set`` and ``rubric_shell`` read it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, cast

from task_sync.core.config import settings
from task_sync.services.docker_driver import ContainerCommandError
from task_sync.services.handlers import StepRun, failure, success
from task_sync.services.handlers.docker_build import IMAGE_TAG_PLACEHOLDER, task_docker_settings
from task_sync.services.step_types import DockerPoolConfig
from task_sync.services.triggers import image_ids_match

KEEP_ALIVE = ("sh", "-c", "while true; do sleep 30; done")
INDEX_LOCK_CHECK = "if [ -e .git/index.lock ]; then echo exists; else echo ok; fi"


def pool_keys(solutions: int) -> list[str]:
    return ["original", "golden", *(f"solution{slot}" for slot in range(1, solutions + 1))]


def container_name(task_id: int, key: str) -> str:
    return f"task_{task_id}_volume_{key}"


def host_folder(base_path: Path, key: str) -> Path:
    if key == "original":
        return base_path / "original"
    return base_path / f"volume_{key}"


def run_parameters(parameters: list[str], image_tag: str) -> list[str]:
    """Substitute the image tag and drop ``--rm``."""
    return [item.replace(IMAGE_TAG_PLACEHOLDER, image_tag) for item in parameters if item != "--rm"]


async def _ensure_container(
    ctx: StepRun,
    *,
    name: str,
    known_id: str,
    image_tag: str,
    image_id: str,
    mounts: dict[str, str],
    platform: str | None,
    parameters: list[str],
) -> tuple[str, str]:
    """Return ``(container_id, action)``; action is reused, started or created."""
    if await ctx.driver.exists(name):
        image_ref, running = await ctx.driver.inspect_image(name)
        if image_ids_match(image_id, image_ref):
            if running:
                return known_id or name, "reused"
            try:
                await ctx.driver.start(name)
            except ContainerCommandError as exc:
                ctx.logger.warning("docker_pool.start.failed", extra={"container": name, "error": str(exc)})
            else:
                return known_id or name, "started"
        else:
            ctx.logger.info(
                "docker_pool.image.stale",
                extra={"container": name, "expected": image_id, "found": image_ref},
            )
        await ctx.driver.remove(name)

    container_id = await ctx.driver.run_container(
        name,
        image_tag,
        mounts=mounts,
        platform=platform,
        parameters=parameters,
        command=KEEP_ALIVE,
    )
    return container_id or name, "created"


async def run(ctx: StepRun) -> None:
    config = cast(DockerPoolConfig, ctx.config)
    task_docker = task_docker_settings(ctx)
    image_tag = str(task_docker.get("image_tag") or "")
    if not image_tag:
        await ctx.record(failure("docker_pool requires the task docker.image_tag"))
        return
    if not ctx.task.local_path or ctx.task.id is None:
        await ctx.record(failure("docker_pool requires the task local_path"))
        return

    image_id = await ctx.driver.resolve_image_id(image_tag)
    if not image_id:
        await ctx.record(failure(f"image {image_tag} is not available"))
        return

    task_settings = ctx.task_settings
    app_folder = str(task_settings.get("app_folder") or settings.default_app_folder)
    platform = str(task_docker.get("platform") or task_settings.get("platform") or "") or None
    stored_parameters = task_settings.get("docker_run_parameters")
    raw_parameters = list(stored_parameters) if isinstance(stored_parameters, list) else []
    parameters = run_parameters(raw_parameters or config.parameters, image_tag)

    previous = task_settings.get("containers_map")
    previous_map: dict[str, Any] = previous if isinstance(previous, dict) else {}
    containers_map: dict[str, dict[str, str]] = {}
    actions: dict[str, str] = {}
    for key in pool_keys(config.solutions):
        entry = previous_map.get(key)
        entry = entry if isinstance(entry, dict) else {}
        name = str(entry.get("container_name") or "") or container_name(ctx.task.id, key)
        try:
            container_id, action = await _ensure_container(
                ctx,
                name=name,
                known_id=str(entry.get("container_id") or ""),
                image_tag=image_tag,
                image_id=image_id,
                mounts={str(host_folder(ctx.base_path, key)): app_folder},
                platform=platform,
                parameters=parameters,
            )
        except ContainerCommandError as exc:
            await ctx.record(failure(f"container {name} could not be started: {exc}", output=exc.output))
            return
        containers_map[key] = {"container_id": container_id, "container_name": name}
        actions[key] = action

    locked: list[str] = []
    git_failures: list[str] = []
    for key, entry in containers_map.items():
        name = entry["container_name"]
        lock_check = await ctx.driver.exec_shell(name, INDEX_LOCK_CHECK, workdir=app_folder)
        if lock_check.stdout.strip() == "exists":
            locked.append(key)
        status = await ctx.driver.exec_shell(name, "git status", workdir=app_folder)
        if not status.ok:
            git_failures.append(key)

    settings_patch: dict[str, Any] = {"containers_map": containers_map}
    if not raw_parameters and config.parameters:
        settings_patch["docker_run_parameters"] = list(config.parameters)
    if containers_map != previous_map or "docker_run_parameters" in settings_patch:
        await ctx.update_task_settings(settings_patch)

    if locked:
        await ctx.record(failure(f"git index.lock present in: {', '.join(locked)}", actions=actions))
        return
    if git_failures:
        await ctx.record(failure(f"git status failed in: {', '.join(git_failures)}", actions=actions))
        return

    changed = sorted(key for key, action in actions.items() if action != "reused")
    if not changed and not ctx.force and image_ids_match(config.image_id, image_id):
        await ctx.record_unchanged(success("container pool up to date", containers=len(containers_map)))
        return

    ctx.logger.info("docker_pool.ready", extra={"changed": changed, "image_tag": image_tag})
    updated = config.model_copy(
        update={
            "image_id": image_id,
            "triggers": config.triggers.model_copy(
                update={
                    "image_tag": image_tag,
                    "image_id": image_id,
                    "containers": {entry["container_name"]: image_id for entry in containers_map.values()},
                },
            ),
        },
    )
    await ctx.finish(
        success(f"containers ready: {len(containers_map)}", actions=actions),
        config=updated,
    )
