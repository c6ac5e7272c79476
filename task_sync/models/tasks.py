"""Task model owning a group of dispatchable steps."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field

from task_sync.core.time import utcnow
from task_sync.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)

TASK_STATUSES = ("active", "inactive", "disabled", "running")


class Task(QueryModel, table=True):
    """Unit of work whose settings accumulate derived container/image/rubric state."""

    __tablename__ = "tasks"  # pyright: ignore[reportAssignmentType]

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    status: str = Field(default="active", index=True)
    local_path: str | None = None
    settings: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
