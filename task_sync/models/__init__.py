"""Model exports for SQLAlchemy/SQLModel metadata discovery."""

from task_sync.models.rubric_shell_output_history import RubricShellOutputHistory
from task_sync.models.steps import Step
from task_sync.models.tasks import Task
from task_sync.models.websocket_updates import WebsocketUpdate

__all__ = [
    "RubricShellOutputHistory",
    "Step",
    "Task",
    "WebsocketUpdate",
]
