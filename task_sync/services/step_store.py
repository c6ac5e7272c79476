"""Persistence operations over the ``steps`` and ``tasks`` tables.

Every mutating call commits on its own. Multi-row callers (the reconciler,
handlers) accept partial progress because each of their writes is idempotent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, update
from sqlmodel import col, select

from task_sync.core.logging import get_logger
from task_sync.core.time import utcnow
from task_sync.models.steps import Step
from task_sync.models.tasks import TASK_STATUSES, Task
from task_sync.models.websocket_updates import WebsocketUpdate
from task_sync.services.db_service import TaskSyncDBService

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)

# Task settings keys merged one level deeper instead of being replaced.
_DEEP_MERGE_TASK_KEYS = frozenset({"docker"})


class StepNotFoundError(LookupError):
    """Raised when a step row is missing (including mid-run deletion)."""

    def __init__(self, step_id: int) -> None:
        super().__init__(f"step {step_id} not found")
        self.step_id = step_id


class TaskNotFoundError(LookupError):
    """Raised when a task row is missing."""

    def __init__(self, task_ref: object) -> None:
        super().__init__(f"task {task_ref} not found")
        self.task_ref = task_ref


def generated_by_of(settings: object) -> str | None:
    """Return the ``generated_by`` marker from any type block of a settings blob."""
    if not isinstance(settings, dict):
        return None
    for value in settings.values():
        if isinstance(value, dict) and "generated_by" in value:
            marker = value.get("generated_by")
            return str(marker) if marker is not None else None
    return None


class StepStore(TaskSyncDBService):
    """Step/task reads and writes shared by the dispatcher, handlers and CLI."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)

    # Tasks

    async def create_task(
        self,
        *,
        name: str,
        local_path: str | None = None,
        status: str = "active",
        settings: dict[str, Any] | None = None,
    ) -> Task:
        if status not in TASK_STATUSES:
            msg = f"invalid task status: {status}"
            raise ValueError(msg)
        task = Task(name=name, local_path=local_path, status=status, settings=dict(settings or {}))
        return await self.add_commit_refresh(task)

    async def get_task(self, task_id: int) -> Task:
        task = await Task.objects.by_id(task_id).fresh().first(self.session)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def resolve_task(self, task_ref: int | str) -> Task:
        """Resolve a task by numeric id (int or digit string) or by name."""
        if isinstance(task_ref, int) or str(task_ref).strip().isdigit():
            return await self.get_task(int(task_ref))
        task = await Task.objects.filter_by(name=str(task_ref).strip()).fresh().first(self.session)
        if task is None:
            raise TaskNotFoundError(task_ref)
        return task

    async def list_tasks(self) -> list[Task]:
        return await Task.objects.all().order_by(col(Task.id)).fresh().all(self.session)

    async def set_task_status(self, task_id: int, status: str) -> Task:
        if status not in TASK_STATUSES:
            msg = f"invalid task status: {status}"
            raise ValueError(msg)
        task = await self.get_task(task_id)
        task.status = status
        task.updated_at = utcnow()
        return await self.add_commit_refresh(task)

    async def set_task_local_path(self, task_id: int, local_path: str | None) -> Task:
        task = await self.get_task(task_id)
        task.local_path = local_path or None
        task.updated_at = utcnow()
        return await self.add_commit_refresh(task)

    async def update_task_settings(self, task_id: int, patch: dict[str, Any]) -> dict[str, Any]:
        """Merge ``patch`` into the task settings blob (last writer wins)."""
        task = await self.get_task(task_id)
        merged = dict(task.settings or {})
        for key, value in patch.items():
            current = merged.get(key)
            if key in _DEEP_MERGE_TASK_KEYS and isinstance(current, dict) and isinstance(value, dict):
                merged[key] = {**current, **value}
            else:
                merged[key] = value
        task.settings = merged
        task.updated_at = utcnow()
        self.session.add(task)
        self.session.add(
            WebsocketUpdate(update_type="task_settings", task_id=task_id, payload={"keys": sorted(patch)}),
        )
        await self.session.commit()
        return merged

    # Steps

    async def create(self, task_ref: int | str, title: str, settings: dict[str, Any]) -> int:
        task = await self.resolve_task(task_ref)
        step = Step(task_id=task.id, title=title, settings=dict(settings))
        step = await self.add_commit_refresh(step)
        if step.id is None:
            msg = "step id was not assigned on insert"
            raise RuntimeError(msg)
        logger.info(
            "step_store.step.created",
            extra={"step_id": step.id, "task_id": task.id, "title": title},
        )
        return step.id

    async def get(self, step_id: int) -> Step:
        step = await Step.objects.by_id(step_id).fresh().first(self.session)
        if step is None:
            raise StepNotFoundError(step_id)
        return step

    async def _update_step(self, step_id: int, **values: Any) -> None:
        statement = (
            update(Step)
            .where(col(Step.id) == step_id)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session="evaluate")
        )
        result = await self.session.exec(statement)  # type: ignore[call-overload]
        if result.rowcount == 0:
            await self.session.rollback()
            raise StepNotFoundError(step_id)

    async def update_settings(
        self,
        step_id: int,
        settings: dict[str, Any],
        *,
        title: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"settings": dict(settings)}
        if title is not None:
            values["title"] = title
        await self._update_step(step_id, **values)
        await self.session.commit()

    async def update_result(self, step_id: int, result: dict[str, Any]) -> None:
        await self._update_step(step_id, results=dict(result))
        step = await self.get(step_id)
        self.session.add(
            WebsocketUpdate(
                update_type="step_result",
                task_id=step.task_id,
                step_id=step_id,
                payload={"result": result.get("result"), "message": result.get("message")},
            ),
        )
        await self.session.commit()

    async def clear_results(self, step_id: int) -> None:
        await self._update_step(step_id, results=None)
        await self.session.commit()

    async def set_status(self, step_id: int, status: str) -> None:
        await self._update_step(step_id, status=status)
        await self.session.commit()

    async def delete(self, step_id: int) -> None:
        statement = (
            delete(Step)
            .where(col(Step.id) == step_id)
            .execution_options(synchronize_session="evaluate")
        )
        result = await self.session.exec(statement)  # type: ignore[call-overload]
        if result.rowcount == 0:
            await self.session.rollback()
            raise StepNotFoundError(step_id)
        await self.session.commit()
        logger.info("step_store.step.deleted", extra={"step_id": step_id})

    async def list_steps(self, *, task_id: int | None = None) -> list[Step]:
        query = Step.objects.all()
        if task_id is not None:
            query = query.filter(col(Step.task_id) == task_id)
        return await query.order_by(col(Step.id)).fresh().all(self.session)

    async def list_generated_by(self, parent_step_id: int) -> list[Step]:
        """Return children whose type settings carry ``generated_by == parent``, any type."""
        marker = str(parent_step_id)
        steps = await self.list_steps()
        return [step for step in steps if generated_by_of(step.settings) == marker]

    async def list_by_type_key(self, type_key: str, *, active_only: bool = True) -> list[Step]:
        statement = select(Step).join(Task, col(Task.id) == col(Step.task_id))
        if active_only:
            statement = statement.where(col(Task.status) == "active")
        statement = statement.order_by(col(Step.id)).execution_options(populate_existing=True)
        steps = list(await self.session.exec(statement))
        return [step for step in steps if isinstance(step.settings, dict) and type_key in step.settings]


__all__ = [
    "StepNotFoundError",
    "StepStore",
    "TaskNotFoundError",
    "generated_by_of",
]
