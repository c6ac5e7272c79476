"""Read models for step API payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlmodel import Field, SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class StepRead(SQLModel):
    """Step row plus its detected type key (``None`` when settings are malformed)."""

    id: int
    task_id: int
    title: str
    status: str
    step_type: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    results: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class WebsocketUpdateRead(SQLModel):
    """One change notification streamed to websocket subscribers."""

    id: int
    update_type: str
    task_id: int | None = None
    step_id: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
