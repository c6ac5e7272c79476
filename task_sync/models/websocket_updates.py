"""Append-only change feed consumed by the websocket endpoint."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field

from task_sync.core.time import utcnow
from task_sync.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class WebsocketUpdate(QueryModel, table=True):
    """One step/task change event, polled by cursor id."""

    __tablename__ = "websocket_updates"  # pyright: ignore[reportAssignmentType]

    id: int | None = Field(default=None, primary_key=True)
    update_type: str = Field(index=True)
    task_id: int | None = Field(default=None, index=True)
    step_id: int | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=utcnow, index=True)
