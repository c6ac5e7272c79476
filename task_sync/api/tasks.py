"""Task read routes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, status

from task_sync.api.steps import step_read
from task_sync.db.session import get_session
from task_sync.schemas.steps import StepRead
from task_sync.schemas.tasks import TaskRead
from task_sync.services.step_store import StepStore, TaskNotFoundError

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

router = APIRouter(prefix="/tasks", tags=["tasks"])
SESSION_DEP = Depends(get_session)


@router.get("", response_model=list[TaskRead])
async def list_tasks(session: AsyncSession = SESSION_DEP) -> list[TaskRead]:
    """List every task ordered by id."""
    tasks = await StepStore(session).list_tasks()
    return [TaskRead.model_validate(task, from_attributes=True) for task in tasks]


@router.get("/{task_id}/steps", response_model=list[StepRead])
async def list_task_steps(task_id: int, session: AsyncSession = SESSION_DEP) -> list[StepRead]:
    """List the steps owned by one task."""
    store = StepStore(session)
    try:
        await store.get_task(task_id)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return [step_read(step) for step in await store.list_steps(task_id=task_id)]
