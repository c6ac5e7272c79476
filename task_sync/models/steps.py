"""Step model: one dispatchable unit typed by its settings key."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field

from task_sync.core.time import utcnow
from task_sync.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class Step(QueryModel, table=True):
    """Step row; ``settings`` carries exactly one recognized type key."""

    __tablename__ = "steps"  # pyright: ignore[reportAssignmentType]

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(foreign_key="tasks.id", index=True)
    title: str = Field(default="")
    status: str = Field(default="active", index=True)
    settings: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    results: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def result_status(self) -> str | None:
        if not isinstance(self.results, dict):
            return None
        value = self.results.get("result")
        return value if isinstance(value, str) else None
