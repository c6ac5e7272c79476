"""Report payloads summarizing step results per task."""

from __future__ import annotations

from sqlmodel import Field, SQLModel


class StepReportRow(SQLModel):
    step_id: int
    title: str
    step_type: str | None = None
    status: str
    result: str | None = None
    message: str | None = None


class TaskReport(SQLModel):
    """Per-task result counts plus one row per step."""

    task_id: int
    task_name: str
    task_status: str
    counts: dict[str, int] = Field(default_factory=dict)
    steps: list[StepReportRow] = Field(default_factory=list)


class ReportRead(SQLModel):
    tasks: list[TaskReport] = Field(default_factory=list)
