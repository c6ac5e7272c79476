"""Polling websocket feed over the ``websocket_updates`` table."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy import func
from sqlmodel import col, select

from task_sync.core.config import settings
from task_sync.core.logging import get_logger
from task_sync.db.session import get_session
from task_sync.models.websocket_updates import WebsocketUpdate
from task_sync.schemas.steps import WebsocketUpdateRead

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)

router = APIRouter(tags=["updates"])
SESSION_DEP = Depends(get_session)
MAX_BATCH = 200


async def latest_update_id(session: AsyncSession) -> int:
    value = (await session.exec(select(func.max(col(WebsocketUpdate.id))))).first()
    return int(value or 0)


async def fetch_updates(session: AsyncSession, *, after: int, limit: int = MAX_BATCH) -> list[WebsocketUpdateRead]:
    """Return updates with ``id > after`` in id order."""
    statement = (
        select(WebsocketUpdate)
        .where(col(WebsocketUpdate.id) > after)
        .order_by(col(WebsocketUpdate.id))
        .limit(limit)
    )
    rows = list(await session.exec(statement))
    return [WebsocketUpdateRead.model_validate(row, from_attributes=True) for row in rows]


@router.websocket("/ws/updates")
async def stream_updates(
    websocket: WebSocket,
    after: int | None = None,
    session: AsyncSession = SESSION_DEP,
) -> None:
    """Push new step/task updates; ``after`` resumes from a known cursor."""
    await websocket.accept()
    cursor = after if after is not None else await latest_update_id(session)
    logger.info("updates.websocket.connected", extra={"cursor": cursor})
    try:
        while True:
            updates = await fetch_updates(session, after=cursor)
            # End the read transaction so the next poll sees new commits.
            await session.commit()
            for update in updates:
                await websocket.send_json(update.model_dump(mode="json"))
                cursor = update.id
            await asyncio.sleep(settings.websocket_poll_interval_seconds)
    except WebSocketDisconnect:
        logger.info("updates.websocket.disconnected", extra={"cursor": cursor})
