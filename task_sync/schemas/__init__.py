"""Public schema exports shared across API route modules and the CLI."""

from task_sync.schemas.reports import ReportRead, StepReportRow, TaskReport
from task_sync.schemas.steps import StepRead, WebsocketUpdateRead
from task_sync.schemas.tasks import TaskRead

__all__ = [
    "ReportRead",
    "StepRead",
    "StepReportRow",
    "TaskRead",
    "TaskReport",
    "WebsocketUpdateRead",
]
