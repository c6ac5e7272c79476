"""Result report route."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Query, status

from task_sync.db.session import get_session
from task_sync.schemas.reports import ReportRead
from task_sync.services.report import build_report
from task_sync.services.step_store import TaskNotFoundError

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

router = APIRouter(prefix="/report", tags=["report"])
SESSION_DEP = Depends(get_session)
TASK_ID_QUERY = Query(default=None)


@router.get("", response_model=ReportRead)
async def get_report(
    task_id: int | None = TASK_ID_QUERY,
    session: AsyncSession = SESSION_DEP,
) -> ReportRead:
    """Summarize step results per task, optionally for one task."""
    try:
        return await build_report(session, task_id=task_id)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
