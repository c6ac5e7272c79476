"""Route steps to their type handlers after task, type and dependency checks."""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Literal

from task_sync.core.logging import get_logger, get_step_logger
from task_sync.services.criteria import CriteriaExtractor, RubricFileExtractor
from task_sync.services.dependencies import DependencyChecker
from task_sync.services.docker_driver import DockerCLI
from task_sync.services.handlers import (
    ContainerDriver,
    StepHandler,
    StepRun,
    docker_build,
    docker_pool,
    docker_pull,
    docker_shell,
    failure,
    file_exists,
    rubric_set,
    rubric_shell,
    rubrics_import,
)
from task_sync.services.hashing import ContentHasher
from task_sync.services.reconciler import CriteriaReconciler
from task_sync.services.step_store import StepNotFoundError, StepStore, TaskNotFoundError
from task_sync.services.step_types import STEP_TYPES, StepSettingsError, parse_step_settings, strip_force
from task_sync.services.triggers import TriggerEvaluator

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)

DispatchOutcome = Literal[
    "executed",
    "skipped_inactive",
    "skipped_dependencies",
    "failed",
    "busy",
    "not_found",
]

_STEP_HANDLERS: dict[str, StepHandler] = {
    "file_exists": file_exists.run,
    "rubrics_import": rubrics_import.run,
    "rubric_set": rubric_set.run,
    "rubric_shell": rubric_shell.run,
    "docker_build": docker_build.run,
    "docker_pull": docker_pull.run,
    "docker_pool": docker_pool.run,
    "docker_shell": docker_shell.run,
}

# Step ids currently being dispatched in this process.
_IN_FLIGHT: set[int] = set()


class StepDispatcher:
    """Sequence task check, type parse, force clear, dependency check and handler."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        driver: ContainerDriver | None = None,
        hasher: ContentHasher | None = None,
        extractor: CriteriaExtractor | None = None,
        triggers: TriggerEvaluator | None = None,
        handlers: dict[str, StepHandler] | None = None,
    ) -> None:
        self.store = StepStore(session)
        self.driver: ContainerDriver = driver or DockerCLI()
        self.hasher = hasher or ContentHasher()
        self.extractor: CriteriaExtractor = extractor or RubricFileExtractor()
        self.triggers = triggers or TriggerEvaluator(self.driver, hasher=self.hasher)
        self.reconciler = CriteriaReconciler(self.store, hasher=self.hasher)
        self.dependencies = DependencyChecker(self.store)
        self.handlers = dict(_STEP_HANDLERS if handlers is None else handlers)

    async def dispatch(self, step_id: int, *, force: bool = False) -> DispatchOutcome:
        if step_id in _IN_FLIGHT:
            logger.info("dispatcher.step.busy", extra={"step_id": step_id})
            return "busy"
        _IN_FLIGHT.add(step_id)
        try:
            return await self._dispatch(step_id, force=force)
        finally:
            _IN_FLIGHT.discard(step_id)

    async def _record_failure(self, step_id: int, message: str) -> DispatchOutcome:
        try:
            await self.store.update_result(step_id, failure(message))
        except StepNotFoundError:
            logger.warning("dispatcher.step.vanished", extra={"step_id": step_id})
            return "not_found"
        return "failed"

    async def _dispatch(self, step_id: int, *, force: bool) -> DispatchOutcome:
        try:
            step = await self.store.get(step_id)
            task = await self.store.get_task(step.task_id)
        except (StepNotFoundError, TaskNotFoundError) as exc:
            logger.warning("dispatcher.step.not_found", extra={"step_id": step_id, "error": str(exc)})
            return "not_found"

        if task.status != "active" or step.status == "disabled":
            logger.info(
                "dispatcher.step.skipped_inactive",
                extra={"step_id": step_id, "task_status": task.status, "step_status": step.status},
            )
            return "skipped_inactive"

        try:
            parsed = parse_step_settings(step.settings)
        except StepSettingsError as exc:
            logger.warning("dispatcher.step.invalid_settings", extra={"step_id": step_id, "error": str(exc)})
            return await self._record_failure(step_id, f"invalid step settings: {exc}")

        effective_force = force or parsed.config.force
        if effective_force:
            await self.store.clear_results(step_id)

        if not await self.dependencies.are_satisfied(step_id, parsed.config.dependency_ids()):
            logger.info("dispatcher.step.waiting_on_dependencies", extra={"step_id": step_id})
            return "skipped_dependencies"

        if parsed.config.force:
            # A stored force flag is honoured by the run that follows, then removed.
            await self.store.update_settings(step_id, strip_force(step.settings))
        if effective_force:
            step = await self.store.get(step_id)

        handler = self.handlers.get(parsed.type_key)
        if handler is None:
            return await self._record_failure(step_id, f"no handler registered for {parsed.type_key}")

        step_logger = get_step_logger(step_id, parsed.type_key)
        ctx = StepRun(
            store=self.store,
            step=step,
            task=task,
            type_key=parsed.type_key,
            config=parsed.config,
            force=effective_force,
            driver=self.driver,
            triggers=self.triggers,
            hasher=self.hasher,
            extractor=self.extractor,
            reconciler=self.reconciler,
            logger=step_logger,
        )
        step_logger.info("dispatcher.step.started", extra={"force": effective_force})
        try:
            await handler(ctx)
        except StepNotFoundError:
            step_logger.warning("dispatcher.step.deleted_mid_run")
            await self.store.session.rollback()
            return "not_found"
        except Exception as exc:
            step_logger.exception("dispatcher.step.failed", extra={"error": str(exc)})
            await self.store.session.rollback()
            return await self._record_failure(step_id, f"{parsed.type_key} failed: {exc}")
        step_logger.info("dispatcher.step.finished")
        return "executed"

    async def dispatch_all(self) -> dict[str, int]:
        """Walk every registered type in order across active tasks."""
        outcomes: Counter[str] = Counter()
        for type_key in STEP_TYPES:
            try:
                steps = await self.store.list_by_type_key(type_key)
            except Exception:
                logger.exception("dispatcher.type.list_failed", extra={"step_type": type_key})
                await self.store.session.rollback()
                continue
            step_ids = [step.id for step in steps if step.id is not None]
            for step_id in step_ids:
                try:
                    outcome = await self.dispatch(step_id)
                except Exception:
                    logger.exception(
                        "dispatcher.step.dispatch_failed",
                        extra={"step_id": step_id, "step_type": type_key},
                    )
                    await self.store.session.rollback()
                    outcome = "failed"
                outcomes[outcome] += 1
        logger.info("dispatcher.tick.complete", extra={"outcomes": dict(outcomes)})
        return dict(outcomes)


__all__ = ["DispatchOutcome", "StepDispatcher"]
