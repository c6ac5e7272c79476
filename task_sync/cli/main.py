"""Operator CLI: run the poll loop, dispatch steps and manage tasks/steps."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

from task_sync.core.config import settings
from task_sync.core.logging import configure_logging
from task_sync.models.tasks import TASK_STATUSES
from task_sync.services.dispatcher import StepDispatcher
from task_sync.services.report import build_report, step_type_or_none
from task_sync.services.step_store import StepStore
from task_sync.services.step_types import StepSettingsError, parse_step_settings, strip_force

if TYPE_CHECKING:
    from task_sync.models.steps import Step

CommandFn = Callable[[AsyncSession, argparse.Namespace], Awaitable[int]]


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, default=str)


def _parse_json_object(raw: str, *, label: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        msg = f"{label} must be valid JSON: {exc}"
        raise ValueError(msg) from exc
    if not isinstance(value, dict):
        msg = f"{label} must be a JSON object"
        raise ValueError(msg)
    return value


def parse_assignment(raw: str) -> tuple[list[str], Any]:
    """Split ``a.b.c=value``; the value is JSON when it parses, else a plain string."""
    path, sep, value = raw.partition("=")
    keys = [key for key in path.strip().split(".") if key]
    if not sep or not keys:
        msg = f"expected path=value, got {raw!r}"
        raise ValueError(msg)
    try:
        parsed: Any = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    return keys, parsed


def apply_assignment(settings_blob: dict[str, Any], keys: list[str], value: Any) -> dict[str, Any]:
    updated = json.loads(json.dumps(settings_blob))
    cursor = updated
    for key in keys[:-1]:
        child = cursor.get(key)
        if not isinstance(child, dict):
            child = {}
            cursor[key] = child
        cursor = child
    cursor[keys[-1]] = value
    return updated


# Tasks


async def _task_create(session: AsyncSession, args: argparse.Namespace) -> int:
    task_settings = _parse_json_object(args.settings, label="--settings") if args.settings else {}
    task = await StepStore(session).create_task(
        name=args.name,
        local_path=args.local_path,
        status=args.status,
        settings=task_settings,
    )
    print(f"created task {task.id}: {task.name}")
    return 0


async def _task_list(session: AsyncSession, args: argparse.Namespace) -> int:
    for task in await StepStore(session).list_tasks():
        print(f"{task.id}\t{task.status}\t{task.name}\t{task.local_path or ''}")
    return 0


async def _task_info(session: AsyncSession, args: argparse.Namespace) -> int:
    task = await StepStore(session).resolve_task(args.task)
    print(_dump(task.model_dump()))
    return 0


async def _task_set_status(session: AsyncSession, args: argparse.Namespace) -> int:
    task = await StepStore(session).resolve_task(args.task)
    if task.id is None:
        return 1
    await StepStore(session).set_task_status(task.id, args.status)
    print(f"task {task.id} status set to {args.status}")
    return 0


async def _task_edit(session: AsyncSession, args: argparse.Namespace) -> int:
    """Set the task fields and settings the docker and rubric steps read."""
    store = StepStore(session)
    task = await store.resolve_task(args.task)
    if task.id is None:
        return 1
    patch: dict[str, Any] = {}
    for key in ("app_folder", "volume_name", "held_out_test_clean_up"):
        value = getattr(args, key)
        if value is not None:
            patch[key] = value
    docker: dict[str, Any] = {}
    if args.image_tag is not None:
        docker["image_tag"] = args.image_tag
    if args.image_hash is not None:
        docker["image_hash"] = args.image_hash
    if args.platform is not None:
        docker["platform"] = args.platform
    if docker:
        patch["docker"] = docker
    for raw in args.set or []:
        keys, value = parse_assignment(raw)
        patch = apply_assignment(patch, keys, value)
    if args.local_path is not None:
        await store.set_task_local_path(task.id, args.local_path)
    if patch:
        await store.update_task_settings(task.id, patch)
    print(f"updated task {task.id}")
    return 0


# Steps


async def _step_create(session: AsyncSession, args: argparse.Namespace) -> int:
    step_settings = _parse_json_object(args.settings, label="--settings")
    parse_step_settings(step_settings)
    step_id = await StepStore(session).create(args.task, args.title, strip_force(step_settings))
    print(f"created step {step_id}")
    return 0


async def _step_list(session: AsyncSession, args: argparse.Namespace) -> int:
    for step in await StepStore(session).list_steps(task_id=args.task_id):
        print(
            f"{step.id}\t{step.task_id}\t{step_type_or_none(step) or '?'}\t"
            f"{step.status}\t{step.result_status or '-'}\t{step.title}",
        )
    return 0


async def _step_info(session: AsyncSession, args: argparse.Namespace) -> int:
    step = await StepStore(session).get(args.step_id)
    print(_dump({**step.model_dump(), "step_type": step_type_or_none(step)}))
    return 0


async def _step_edit(session: AsyncSession, args: argparse.Namespace) -> int:
    store = StepStore(session)
    step = await store.get(args.step_id)
    blob = dict(step.settings or {})
    for raw in args.set or []:
        keys, value = parse_assignment(raw)
        blob = apply_assignment(blob, keys, value)
    blob = strip_force(blob)
    parse_step_settings(blob)
    await store.update_settings(args.step_id, blob, title=args.title)
    print(f"updated step {args.step_id}")
    return 0


async def _step_delete(session: AsyncSession, args: argparse.Namespace) -> int:
    await StepStore(session).delete(args.step_id)
    print(f"deleted step {args.step_id}")
    return 0


async def _step_activate(session: AsyncSession, args: argparse.Namespace) -> int:
    status = "disabled" if args.disable else "active"
    await StepStore(session).set_status(args.step_id, status)
    print(f"step {args.step_id} status set to {status}")
    return 0


def _dependency_ids(step: Step) -> list[int]:
    try:
        return parse_step_settings(step.settings).config.dependency_ids()
    except StepSettingsError:
        return []


def render_tree(steps: list[Step]) -> list[str]:
    """Render steps as a dependency forest; roots have no in-task dependency."""
    by_id = {step.id: step for step in steps if step.id is not None}
    children: dict[int, list[int]] = {}
    roots: list[int] = []
    for step_id, step in by_id.items():
        parents = [dep for dep in _dependency_ids(step) if dep in by_id and dep != step_id]
        if not parents:
            roots.append(step_id)
        for parent in parents:
            children.setdefault(parent, []).append(step_id)

    lines: list[str] = []

    def _walk(step_id: int, depth: int, path: frozenset[int]) -> None:
        step = by_id[step_id]
        marker = " (cycle)" if step_id in path else ""
        lines.append(
            f"{'  ' * depth}- [{step_id}] {step.title} "
            f"<{step_type_or_none(step) or '?'}> {step.result_status or 'pending'}{marker}",
        )
        if marker:
            return
        for child_id in sorted(children.get(step_id, [])):
            _walk(child_id, depth + 1, path | {step_id})

    for root in sorted(roots):
        _walk(root, 0, frozenset())
    return lines


async def _step_tree(session: AsyncSession, args: argparse.Namespace) -> int:
    store = StepStore(session)
    tasks = [await store.get_task(args.task_id)] if args.task_id is not None else await store.list_tasks()
    for task in tasks:
        print(f"Task {task.id}: {task.name} [{task.status}]")
        for line in render_tree(await store.list_steps(task_id=task.id)):
            print(f"  {line}")
    return 0


# Dispatch and reporting


async def _run_steps(session: AsyncSession, args: argparse.Namespace) -> int:
    dispatcher = StepDispatcher(session)
    if args.step_id is not None:
        outcome = await dispatcher.dispatch(args.step_id, force=args.force)
        print(f"step {args.step_id}: {outcome}")
        return 1 if outcome == "not_found" else 0
    print(_dump(await dispatcher.dispatch_all()))
    return 0


async def _report(session: AsyncSession, args: argparse.Namespace) -> int:
    report = await build_report(session, task_id=args.task_id)
    if args.json:
        print(_dump(report.model_dump()))
        return 0
    for task in report.tasks:
        counts = ", ".join(f"{key}={value}" for key, value in sorted(task.counts.items()))
        print(f"Task {task.task_id}: {task.task_name} [{task.task_status}] {counts}")
        for row in task.steps:
            message = f" - {row.message}" if row.message else ""
            print(f"  {row.step_id}\t{row.step_type or '?'}\t{row.result or 'pending'}\t{row.title}{message}")
    return 0


async def _cleanup_legacy_results(session: AsyncSession, args: argparse.Namespace) -> int:
    """Drop ``results`` kept inside ``rubric_shell`` settings by older releases."""
    store = StepStore(session)
    cleaned = 0
    for step in await store.list_by_type_key("rubric_shell", active_only=False):
        block = (step.settings or {}).get("rubric_shell")
        if step.id is None or not isinstance(block, dict) or "results" not in block:
            continue
        trimmed = {key: value for key, value in block.items() if key != "results"}
        await store.update_settings(step.id, {**(step.settings or {}), "rubric_shell": trimmed})
        print(f"cleaned step {step.id}")
        cleaned += 1
    print(f"cleaned {cleaned} steps")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-sync",
        description="Dispatch grading pipeline steps and manage tasks.",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL for one-shot commands and migrate.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the poll loop until interrupted.")
    sub.add_parser("api", help="Serve the read-only HTTP and websocket API.")

    run_steps = sub.add_parser("run-steps", help="Dispatch one step, or every eligible step.")
    run_steps.add_argument("--step-id", type=int, default=None)
    run_steps.add_argument("--force", action="store_true", help="Bypass trigger checks for --step-id.")
    run_steps.set_defaults(handler=_run_steps)

    migrate = sub.add_parser("migrate", help="Apply database migrations.")
    migrate.add_argument("--revision", default="head")

    report = sub.add_parser("report", help="Summarize step results per task.")
    report.add_argument("--task-id", type=int, default=None)
    report.add_argument("--json", action="store_true")
    report.set_defaults(handler=_report)

    task = sub.add_parser("task", help="Manage tasks.")
    task_sub = task.add_subparsers(dest="task_command", required=True)
    task_create = task_sub.add_parser("create")
    task_create.add_argument("name")
    task_create.add_argument("--local-path", default=None)
    task_create.add_argument("--status", choices=TASK_STATUSES, default="active")
    task_create.add_argument("--settings", default=None, help="Task settings as a JSON object.")
    task_create.set_defaults(handler=_task_create)
    task_sub.add_parser("list").set_defaults(handler=_task_list)
    task_info = task_sub.add_parser("info")
    task_info.add_argument("task", help="Task id or name.")
    task_info.set_defaults(handler=_task_info)
    task_status = task_sub.add_parser("set-status")
    task_status.add_argument("task", help="Task id or name.")
    task_status.add_argument("status", choices=TASK_STATUSES)
    task_status.set_defaults(handler=_task_set_status)
    task_edit = task_sub.add_parser("edit", help="Set task paths, image and container settings.")
    task_edit.add_argument("task", help="Task id or name.")
    task_edit.add_argument("--local-path", default=None)
    task_edit.add_argument("--app-folder", dest="app_folder", default=None)
    task_edit.add_argument("--platform", default=None)
    task_edit.add_argument("--image-tag", dest="image_tag", default=None)
    task_edit.add_argument("--image-hash", dest="image_hash", default=None)
    task_edit.add_argument("--volume-name", dest="volume_name", default=None)
    task_edit.add_argument("--held-out-test-clean-up", dest="held_out_test_clean_up", default=None)
    task_edit.add_argument("--set", action="append", metavar="PATH=VALUE")
    task_edit.set_defaults(handler=_task_edit)

    step = sub.add_parser("step", help="Manage steps.")
    step_sub = step.add_subparsers(dest="step_command", required=True)
    step_create = step_sub.add_parser("create")
    step_create.add_argument("--task", required=True, help="Task id or name.")
    step_create.add_argument("--title", required=True)
    step_create.add_argument("--settings", required=True, help="Step settings as a JSON object.")
    step_create.set_defaults(handler=_step_create)
    step_list = step_sub.add_parser("list")
    step_list.add_argument("--task-id", type=int, default=None)
    step_list.set_defaults(handler=_step_list)
    step_info = step_sub.add_parser("info")
    step_info.add_argument("step_id", type=int)
    step_info.set_defaults(handler=_step_info)
    step_edit = step_sub.add_parser("edit")
    step_edit.add_argument("step_id", type=int)
    step_edit.add_argument("--set", action="append", metavar="PATH=VALUE")
    step_edit.add_argument("--title", default=None)
    step_edit.set_defaults(handler=_step_edit)
    step_delete = step_sub.add_parser("delete")
    step_delete.add_argument("step_id", type=int)
    step_delete.set_defaults(handler=_step_delete)
    step_activate = step_sub.add_parser("activate")
    step_activate.add_argument("step_id", type=int)
    step_activate.add_argument("--disable", action="store_true")
    step_activate.set_defaults(handler=_step_activate)
    step_tree = step_sub.add_parser("tree")
    step_tree.add_argument("--task-id", type=int, default=None)
    step_tree.set_defaults(handler=_step_tree)

    cleanup = sub.add_parser("cleanup", help="One-off repairs of stored step data.")
    cleanup_sub = cleanup.add_subparsers(dest="cleanup_command", required=True)
    cleanup_sub.add_parser(
        "legacy-results",
        help="Remove results stored inside rubric_shell settings.",
    ).set_defaults(handler=_cleanup_legacy_results)
    return parser


async def _run_with_session(handler: CommandFn, args: argparse.Namespace) -> int:
    """Run one command in its own session; an explicit URL gets a throwaway engine."""
    if args.database_url:
        engine = create_async_engine(args.database_url)
        session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    else:
        from task_sync.db.session import async_session_maker as session_maker
        from task_sync.db.session import engine
    try:
        async with session_maker() as session:
            return await handler(session, args)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "run-steps" and args.force and args.step_id is None:
        parser.error("--force requires --step-id")
    if args.database_url and args.command in {"serve", "api"}:
        parser.error(f"{args.command} reads DATABASE_URL from the environment")
    configure_logging()

    try:
        if args.command == "migrate":
            from task_sync.db.session import run_migrations

            run_migrations(args.revision, database_url=args.database_url)
            print(f"migrated to {args.revision}")
            return 0
        if args.command == "api":
            import uvicorn

            uvicorn.run("task_sync.main:app", host=settings.api_host, port=settings.api_port)
            return 0
        if args.command == "serve":
            from task_sync.db.session import run_migrations
            from task_sync.services.poll_loop import run_poll_loop

            if settings.db_auto_migrate:
                run_migrations()
            asyncio.run(run_poll_loop())
            return 0
        return asyncio.run(_run_with_session(args.handler, args))
    except Exception as exc:
        print(f"task-sync error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
