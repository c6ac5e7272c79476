"""Read models for task API payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlmodel import Field, SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class TaskRead(SQLModel):
    """Task row surfaced to API and report callers."""

    id: int
    name: str
    status: str
    local_path: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
