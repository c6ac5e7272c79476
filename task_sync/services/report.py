"""Build per-task result summaries for the CLI and the report endpoint."""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING

from task_sync.schemas.reports import ReportRead, StepReportRow, TaskReport
from task_sync.services.step_store import StepStore
from task_sync.services.step_types import StepSettingsError, detect_type_key

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from task_sync.models.steps import Step


def step_type_or_none(step: Step) -> str | None:
    try:
        return detect_type_key(step.settings)
    except StepSettingsError:
        return None


def _row(step: Step) -> StepReportRow:
    message = None
    if isinstance(step.results, dict):
        raw = step.results.get("message")
        message = str(raw) if raw is not None else None
    return StepReportRow(
        step_id=step.id or 0,
        title=step.title,
        step_type=step_type_or_none(step),
        status=step.status,
        result=step.result_status,
        message=message,
    )


async def build_report(session: AsyncSession, *, task_id: int | None = None) -> ReportRead:
    store = StepStore(session)
    tasks = [await store.get_task(task_id)] if task_id is not None else await store.list_tasks()
    reports: list[TaskReport] = []
    for task in tasks:
        if task.id is None:
            continue
        rows = [_row(step) for step in await store.list_steps(task_id=task.id)]
        counts = Counter(row.result or "pending" for row in rows)
        reports.append(
            TaskReport(
                task_id=task.id,
                task_name=task.name,
                task_status=task.status,
                counts=dict(counts),
                steps=rows,
            ),
        )
    return ReportRead(tasks=reports)


__all__ = ["build_report", "step_type_or_none"]
