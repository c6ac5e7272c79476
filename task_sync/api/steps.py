"""Step read routes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, status

from task_sync.db.session import get_session
from task_sync.schemas.steps import StepRead
from task_sync.services.report import step_type_or_none
from task_sync.services.step_store import StepNotFoundError, StepStore

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from task_sync.models.steps import Step

router = APIRouter(prefix="/steps", tags=["steps"])
SESSION_DEP = Depends(get_session)


def step_read(step: Step) -> StepRead:
    return StepRead.model_validate(
        {**step.model_dump(), "step_type": step_type_or_none(step)},
    )


@router.get("/{step_id}", response_model=StepRead)
async def get_step(step_id: int, session: AsyncSession = SESSION_DEP) -> StepRead:
    """Return one step with its settings and latest results."""
    try:
        step = await StepStore(session).get(step_id)
    except StepNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return step_read(step)
