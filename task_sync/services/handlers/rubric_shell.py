"""``rubric_shell``: grade one criterion against every assigned container.

``run_mode`` picks the assignments:

- ``solutions``: each watched ``solutionN.patch`` in its own container;
- ``golden``: solutions plus the golden and original baselines;
- ``golden-only`` / ``original-only``: that baseline alone.
"""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

from task_sync.core.config import settings
from task_sync.models.rubric_shell_output_history import RubricShellOutputHistory
from task_sync.services.docker_driver import ContainerCommandError
from task_sync.services.handlers import StepExecutionError, StepRun, failure, skipped, success
from task_sync.services.reconciler import TASK_HASH_MAP_KEY
from task_sync.services.step_types import Assignment, RubricShellConfig
from task_sync.services.triggers import TriggerState

HELD_OUT_TESTS_PATCH = "held_out_tests.patch"
PRE_PATCH = "pre_patch.patch"
GOLDEN_PATCH = "golden.patch"
ORIGINAL_BASELINE = "original"
SOLUTION_SLOTS = 4
PATCH_STAGING_DIR = "/tmp"

_WORKSPACE_RESET = (
    "sync && if [ -e .git/index.lock ]; then rm -f .git/index.lock; fi",
    "sync && git checkout -- .",
    "sync && git clean -fdx",
    "sync && git reset --hard HEAD",
)


@dataclass(frozen=True, slots=True)
class AssignmentOutcome:
    patch: str
    container: str
    status: str
    output: str
    errored: bool = False

    @property
    def result_key(self) -> str:
        return "golden" if self.patch == GOLDEN_PATCH else self.patch

    def summary(self) -> str:
        return f"{self.status}\nOutput: {self.output}"


def classify_output(output: str) -> str:
    if settings.pass_marker in output:
        return "Pass"
    if settings.fail_marker in output:
        return "Fail"
    return "Success"


def patch_touched_paths(patch_file: Path) -> list[str]:
    """Paths named by a unified diff, without ``a/``/``b/`` prefixes."""
    try:
        lines = patch_file.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return []
    candidates: list[str] = []
    for line in lines:
        if line.startswith("diff --git "):
            candidates.extend(line.split()[2:4])
        elif line.startswith(("+++ ", "--- ")):
            fields = line.split()
            if len(fields) >= 2:
                candidates.append(fields[1])
    paths: list[str] = []
    for candidate in candidates:
        if candidate.startswith(("a/", "b/")):
            candidate = candidate[2:]
        candidate = candidate.strip().removeprefix("./")
        if candidate and candidate != "/dev/null" and candidate not in paths:
            paths.append(candidate)
    return paths


def _container_for(containers_map: dict[str, Any], key: str) -> str:
    entry = containers_map.get(key)
    if not isinstance(entry, dict):
        return ""
    return str(entry.get("container_name") or "").strip()


def resolve_assignments(ctx: StepRun, config: RubricShellConfig) -> list[Assignment]:
    """Build assignments for ``run_mode`` from the task ``containers_map``.

    Solutions use ``containers_map`` entries whose patch is watched, falling
    back to the stored ``assignments``.
    """
    raw_map = ctx.task_settings.get("containers_map")
    containers_map: dict[str, Any] = raw_map if isinstance(raw_map, dict) else {}
    mode = config.run_mode
    assignments: list[Assignment] = []
    if mode in ("solutions", "golden"):
        for slot in range(1, SOLUTION_SLOTS + 1):
            patch = f"solution{slot}.patch"
            container = _container_for(containers_map, f"solution{slot}")
            if patch in config.files and container:
                assignments.append(Assignment(patch=patch, container=container))
        if not assignments:
            assignments = list(config.assignments)
    if mode in ("golden", "golden-only"):
        container = _container_for(containers_map, "golden")
        if container:
            assignments.append(Assignment(patch=GOLDEN_PATCH, container=container))
    if mode in ("golden", "original-only"):
        container = _container_for(containers_map, "original")
        if container:
            assignments.append(Assignment(patch=ORIGINAL_BASELINE, container=container))
    return assignments


async def _check(
    ctx: StepRun,
    container: str,
    command: str,
    app_folder: str,
    *,
    shell: Sequence[str] = ("sh", "-c"),
) -> None:
    result = await ctx.driver.exec_shell(container, command, workdir=app_folder, shell=shell)
    if not result.ok:
        msg = f"'{command}' failed in {container}: {result.output}"
        raise ContainerCommandError(msg, output=result.output)


async def _reset_held_out_paths(ctx: StepRun, container: str, app_folder: str) -> None:
    """Revert only what ``held_out_tests.patch`` touches; failures are logged."""
    paths = patch_touched_paths(ctx.base_path / HELD_OUT_TESTS_PATCH)
    if not paths:
        ctx.logger.info("rubric_shell.golden.cleanup_skipped", extra={"container": container})
        return
    quoted = " ".join(shlex.quote(path) for path in paths)
    commands = [
        "sync && if [ -e .git/index.lock ]; then rm -f .git/index.lock; fi",
        f"sync && git checkout HEAD -- {quoted}",
        f"sync && git clean -fd -- {quoted}",
        f"sync && find {quoted} \\( -name '*.orig' -o -name '*.rej' \\) -delete || true",
    ]
    for command in commands:
        result = await ctx.driver.exec_shell(container, command, workdir=app_folder)
        if not result.ok:
            ctx.logger.warning(
                "rubric_shell.golden.cleanup_failed",
                extra={"container": container, "command": command, "output": result.output},
            )


async def _run_command(
    ctx: StepRun,
    config: RubricShellConfig,
    assignment: Assignment,
    app_folder: str,
) -> AssignmentOutcome:
    result = await ctx.driver.exec_shell(
        assignment.container,
        config.command,
        workdir=app_folder,
        shell=("bash", "-lc"),
    )
    output = result.output
    return AssignmentOutcome(
        patch=assignment.patch,
        container=assignment.container,
        status=classify_output(output),
        output=output,
    )


async def run_assignment(
    ctx: StepRun,
    config: RubricShellConfig,
    assignment: Assignment,
    app_folder: str,
) -> AssignmentOutcome:
    container = assignment.container
    _, running = await ctx.driver.inspect_image(container)
    if not running:
        msg = f"container {container} is not running"
        raise StepExecutionError(msg)

    # The original tree is graded exactly as it stands.
    if assignment.patch == ORIGINAL_BASELINE:
        return await _run_command(ctx, config, assignment, app_folder)

    golden = assignment.patch == GOLDEN_PATCH
    if golden:
        await _reset_held_out_paths(ctx, container, app_folder)
    else:
        for command in _WORKSPACE_RESET:
            await _check(ctx, container, command, app_folder)

    if PRE_PATCH in config.files:
        destination = f"{PATCH_STAGING_DIR}/{PRE_PATCH}"
        await ctx.driver.copy_into(container, ctx.base_path / PRE_PATCH, destination)
        script = f"chmod +x {destination} && {destination}"
        await _check(ctx, container, script, app_folder, shell=("bash", "-lc"))

    # The golden tree already carries its solution.
    if not golden and assignment.patch in config.files:
        destination = f"{PATCH_STAGING_DIR}/{assignment.patch}"
        await ctx.driver.copy_into(container, ctx.base_path / assignment.patch, destination)
        await _check(ctx, container, f"git apply {destination}", app_folder)

    if HELD_OUT_TESTS_PATCH in config.files:
        destination = f"{app_folder.rstrip('/')}/{HELD_OUT_TESTS_PATCH}"
        await ctx.driver.copy_into(container, ctx.base_path / HELD_OUT_TESTS_PATCH, destination)
        await _check(ctx, container, f"git apply {destination}", app_folder)

    outcome = await _run_command(ctx, config, assignment, app_folder)

    clean_up = str(ctx.task_settings.get("held_out_test_clean_up") or "")
    if golden and clean_up:
        result = await ctx.driver.exec_shell(container, clean_up, workdir=app_folder, shell=("bash", "-c"))
        if not result.ok:
            ctx.logger.warning(
                "rubric_shell.golden.held_out_cleanup_failed",
                extra={"container": container, "output": result.output},
            )
    return outcome


async def run(ctx: StepRun) -> None:
    config = cast(RubricShellConfig, ctx.config)
    effective_force = ctx.force or config.rerun or config.force
    rubric_hashes = ctx.task_settings.get(TASK_HASH_MAP_KEY)
    task_hash = ""
    if isinstance(rubric_hashes, dict):
        task_hash = str(rubric_hashes.get(config.criterion_id) or "")

    decision = await ctx.triggers.should_run(
        ctx.base_path,
        TriggerState.from_triggers(config.triggers),
        force=effective_force,
    )
    if task_hash and task_hash == config.hash_last_run and not decision.should_run:
        ctx.logger.info(
            "rubric_shell.up_to_date",
            extra={"criterion_id": config.criterion_id, "hash": task_hash},
        )
        await ctx.record_unchanged(skipped("criterion up to date"))
        return

    if not config.command:
        await ctx.record(failure("rubric_shell has no command"))
        return
    assignments = resolve_assignments(ctx, config)
    if not assignments:
        await ctx.record(failure("no container assignments could be derived"))
        return

    app_folder = str(ctx.task_settings.get("app_folder") or settings.default_app_folder)
    results: dict[str, str] = {}
    lock = asyncio.Lock()

    async def _grade(assignment: Assignment) -> AssignmentOutcome:
        try:
            outcome = await run_assignment(ctx, config, assignment, app_folder)
        except (ContainerCommandError, StepExecutionError) as exc:
            outcome = AssignmentOutcome(
                patch=assignment.patch,
                container=assignment.container,
                status="Error",
                output=getattr(exc, "output", "") or str(exc),
                errored=True,
            )
            ctx.logger.warning(
                "rubric_shell.assignment.failed",
                extra={"patch": assignment.patch, "container": assignment.container, "error": str(exc)},
            )
        async with lock:
            results[outcome.result_key] = outcome.summary()
        return outcome

    outcomes = await asyncio.gather(*(_grade(assignment) for assignment in assignments))

    step_id = ctx.step_id
    for outcome in outcomes:
        ctx.store.session.add(
            RubricShellOutputHistory(
                step_id=step_id,
                task_id=ctx.step.task_id,
                criterion_id=config.criterion_id,
                assignment=outcome.patch,
                status=outcome.status,
                output=outcome.output,
            ),
        )
    await ctx.store.session.commit()

    errored = [outcome.patch for outcome in outcomes if outcome.errored]
    if errored:
        # hash_last_run stays behind so the next tick grades again.
        message = f"{len(errored)} of {len(outcomes)} assignments errored"
        await ctx.record(failure(message, outputs=dict(results), errored=errored))
        return

    containers = {assignment.patch: assignment.container for assignment in assignments}
    baselines = (GOLDEN_PATCH, ORIGINAL_BASELINE)
    solutions = [assignment for assignment in assignments if assignment.patch not in baselines]
    updated = config.model_copy(
        update={
            "hash_last_run": task_hash,
            "rerun": False,
            "assignments": solutions,
            "triggers": config.triggers.model_copy(
                update={
                    "containers": containers,
                    "files": ctx.triggers.refresh_file_hashes(ctx.base_path, config.triggers.files),
                },
            ),
        },
    )
    await ctx.finish(
        success(f"graded {len(outcomes)} assignments", outputs=dict(results)),
        config=updated,
    )
