"""Per-assignment output history for rubric_shell runs."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, Text
from sqlmodel import Field

from task_sync.core.time import utcnow
from task_sync.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class RubricShellOutputHistory(QueryModel, table=True):
    """Captured output of one criterion command against one assignment."""

    __tablename__ = "rubric_shell_output_history"  # pyright: ignore[reportAssignmentType]

    id: int | None = Field(default=None, primary_key=True)
    step_id: int = Field(index=True)
    task_id: int = Field(index=True)
    criterion_id: str = Field(default="", index=True)
    assignment: str = Field(default="")
    status: str = Field(default="")
    output: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, index=True)
