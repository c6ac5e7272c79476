"""Prerequisite checks over ``depends_on`` references."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from sqlalchemy import or_
from sqlmodel import col, select

from task_sync.core.logging import get_logger
from task_sync.models.steps import Step
from task_sync.services.step_store import StepNotFoundError

if TYPE_CHECKING:
    from task_sync.services.step_store import StepStore

logger = get_logger(__name__)

SUCCESS = "success"


class DependencyChecker:
    """Decide whether every referenced step reached a terminal success state.

    ``status == 'success'`` always wins over a stale or absent ``results.result``.
    A referenced step that no longer exists does not block.
    """

    def __init__(self, store: StepStore) -> None:
        self.store = store

    async def _log_each(self, step_id: int, dependency_ids: Sequence[int]) -> None:
        for dependency_id in dependency_ids:
            try:
                dependency = await self.store.get(dependency_id)
            except StepNotFoundError:
                logger.warning(
                    "dependencies.lookup.missing",
                    extra={"step_id": step_id, "dependency_id": dependency_id},
                )
                continue
            except Exception as exc:
                logger.warning(
                    "dependencies.lookup.failed",
                    extra={"step_id": step_id, "dependency_id": dependency_id, "error": str(exc)},
                )
                continue
            logger.debug(
                "dependencies.lookup.state",
                extra={
                    "step_id": step_id,
                    "dependency_id": dependency_id,
                    "status": dependency.status,
                    "result": dependency.result_status,
                },
            )

    async def pending_ids(self, step_id: int, dependency_ids: Sequence[int]) -> list[int]:
        """Return referenced step ids that are not yet successful."""
        ids = sorted({dep_id for dep_id in dependency_ids if dep_id != step_id})
        if not ids:
            return []
        result_field = col(Step.results)["result"].as_string()
        statement = (
            select(col(Step.id))
            .where(col(Step.id).in_(ids))
            .where(col(Step.status) != SUCCESS)
            .where(or_(result_field.is_(None), result_field != SUCCESS))
            .order_by(col(Step.id))
        )
        rows = await self.store.session.exec(statement)
        return [int(row) for row in rows if row is not None]

    async def are_satisfied(self, step_id: int, dependency_ids: Sequence[int]) -> bool:
        if not dependency_ids:
            return True
        await self._log_each(step_id, dependency_ids)
        pending = await self.pending_ids(step_id, dependency_ids)
        if pending:
            logger.info(
                "dependencies.unsatisfied",
                extra={"step_id": step_id, "pending": pending},
            )
            return False
        return True


__all__ = ["DependencyChecker"]
