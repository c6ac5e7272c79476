"""Per-type step handlers and the run context they share."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from task_sync.services.step_store import StepNotFoundError
from task_sync.services.step_types import dump_step_settings
from task_sync.services.triggers import ContainerInspector

if TYPE_CHECKING:
    from task_sync.core.logging import StepLoggerAdapter
    from task_sync.models.steps import Step
    from task_sync.models.tasks import Task
    from task_sync.services.criteria import CriteriaExtractor
    from task_sync.services.docker_driver import CommandResult
    from task_sync.services.hashing import ContentHasher
    from task_sync.services.reconciler import CriteriaReconciler
    from task_sync.services.step_store import StepStore
    from task_sync.services.step_types import StepConfig
    from task_sync.services.triggers import TriggerEvaluator


class StepExecutionError(RuntimeError):
    """Raised by a handler when the step cannot proceed; recorded as ``failure``."""


class ContainerDriver(ContainerInspector, Protocol):
    """Container operations handlers perform on top of inspection."""

    async def build(
        self,
        image_tag: str,
        context: str | Path,
        *,
        parameters: Sequence[str] = (),
        platform: str | None = None,
    ) -> CommandResult: ...

    async def pull(self, image_tag: str, *, platform: str | None = None) -> CommandResult: ...

    async def exec_shell(
        self,
        container: str,
        command: str,
        *,
        workdir: str | None = None,
        shell: Sequence[str] = ("sh", "-c"),
    ) -> CommandResult: ...

    async def copy_into(self, container: str, source: str | Path, destination: str) -> CommandResult: ...

    async def find_container_by_ancestor(self, image_tag: str) -> str | None: ...

    async def container_image_id(self, container: str) -> str: ...

    async def run_container(
        self,
        name: str,
        image: str,
        *,
        mounts: dict[str, str] | None = None,
        platform: str | None = None,
        parameters: Sequence[str] = (),
        command: Sequence[str] = (),
    ) -> str: ...

    async def start(self, name: str) -> CommandResult: ...

    async def remove(self, name: str) -> CommandResult: ...


@dataclass(slots=True)
class StepRun:
    """Everything one handler invocation needs, injected by the dispatcher."""

    store: StepStore
    step: Step
    task: Task
    type_key: str
    config: StepConfig
    force: bool
    driver: ContainerDriver
    triggers: TriggerEvaluator
    hasher: ContentHasher
    extractor: CriteriaExtractor
    reconciler: CriteriaReconciler
    logger: StepLoggerAdapter

    @property
    def step_id(self) -> int:
        if self.step.id is None:
            msg = "step is not persisted"
            raise StepExecutionError(msg)
        return self.step.id

    @property
    def base_path(self) -> Path:
        return Path(self.task.local_path or ".")

    @property
    def task_settings(self) -> dict[str, Any]:
        return dict(self.task.settings or {})

    @property
    def previous_result(self) -> str | None:
        return self.step.result_status

    async def record(self, result: dict[str, Any]) -> None:
        await self.store.update_result(self.step_id, result)

    async def finish(self, result: dict[str, Any], *, config: StepConfig | None = None) -> None:
        """Persist settings (``force`` stripped) and then the result.

        When the settings write fails after the side effect already happened,
        the result is still recorded and the step is flagged ``error``.
        """
        if config is None:
            await self.record(result)
            return
        try:
            await self.store.update_settings(self.step_id, dump_step_settings(self.type_key, config))
        except StepNotFoundError:
            raise
        except Exception as exc:
            await self.store.session.rollback()
            self.logger.exception("handler.settings.persist_failed", extra={"error": str(exc)})
            await self.record({**result, "settings_error": str(exc)})
            await self.store.set_status(self.step_id, "error")
            return
        await self.record(result)

    async def record_unchanged(self, result: dict[str, Any]) -> bool:
        """Record ``result`` for a no-op run unless the step already succeeded."""
        if self.previous_result == "success":
            self.logger.info("handler.unchanged", extra={"recorded": False})
            return False
        await self.record(result)
        self.logger.info("handler.unchanged", extra={"recorded": True, "result": result.get("result")})
        return True

    async def update_task_settings(self, patch: dict[str, Any]) -> dict[str, Any]:
        if self.task.id is None:
            msg = "task is not persisted"
            raise StepExecutionError(msg)
        merged = await self.store.update_task_settings(self.task.id, patch)
        self.task.settings = merged
        return merged


StepHandler = Callable[[StepRun], Awaitable[None]]


def success(message: str, **extra: Any) -> dict[str, Any]:
    return {"result": "success", "message": message, **extra}


def failure(message: str, **extra: Any) -> dict[str, Any]:
    return {"result": "failure", "message": message, **extra}


def skipped(message: str, **extra: Any) -> dict[str, Any]:
    return {"result": "skipped", "message": message, **extra}


__all__ = [
    "ContainerDriver",
    "StepExecutionError",
    "StepHandler",
    "StepRun",
    "failure",
    "skipped",
    "success",
]
