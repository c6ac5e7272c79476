"""Keep exactly one generated ``rubric_shell`` child step per current criterion.

Each write commits on its own; a failure part-way leaves earlier criteria
reconciled and the next call resumes from persisted state.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from task_sync.core.logging import get_logger
from task_sync.services.hashing import ContentHasher
from task_sync.services.step_store import StepNotFoundError
from task_sync.services.step_types import (
    Assignment,
    RubricShellConfig,
    StepSettingsError,
    dump_config,
    parse_step_settings,
)

if TYPE_CHECKING:
    from task_sync.models.steps import Step
    from task_sync.services.criteria import Criterion
    from task_sync.services.step_store import StepStore

logger = get_logger(__name__)

CHILD_TYPE_KEY = "rubric_shell"
TASK_HASH_MAP_KEY = "rubric_set"

# Fields compared structurally to decide whether a kept child must be rewritten.
DEFINITION_FIELDS = frozenset(
    {
        "command",
        "criterion_id",
        "counter",
        "score",
        "required",
        "rubric",
        "depends_on",
        "generated_by",
        "assignments",
        "files",
    },
)


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0

    @property
    def writes(self) -> int:
        return self.created + self.updated + self.deleted


def _definition(config: RubricShellConfig) -> dict[str, Any]:
    return config.model_dump(mode="json", include=set(DEFINITION_FIELDS))


def _child_config_or_none(step: Step) -> RubricShellConfig | None:
    try:
        parsed = parse_step_settings(step.settings)
    except StepSettingsError:
        return None
    if parsed.type_key != CHILD_TYPE_KEY or not isinstance(parsed.config, RubricShellConfig):
        return None
    if not parsed.config.criterion_id:
        return None
    return parsed.config


class CriteriaReconciler:
    """Create, update, dedupe and delete generated children of one parent step."""

    def __init__(self, store: StepStore, *, hasher: ContentHasher | None = None) -> None:
        self.store = store
        self.hasher = hasher or ContentHasher()

    def desired_config(
        self,
        parent_id: int,
        criterion: Criterion,
        *,
        assignments: Sequence[Assignment],
        files: Mapping[str, str],
        rerun: bool,
    ) -> RubricShellConfig:
        return RubricShellConfig.model_validate(
            {
                "command": criterion.held_out_test,
                "criterion_id": criterion.title,
                "counter": criterion.counter,
                "score": criterion.score,
                "required": criterion.required,
                "rubric": criterion.rubric,
                "rerun": rerun,
                "depends_on": [{"id": parent_id}],
                "generated_by": str(parent_id),
                "assignments": [assignment.model_dump(mode="json") for assignment in assignments],
                "files": dict(files),
            },
        )

    async def _delete(self, step_id: int, *, reason: str) -> bool:
        try:
            await self.store.delete(step_id)
        except StepNotFoundError:
            logger.info("reconciler.child.already_gone", extra={"step_id": step_id})
            return False
        logger.info("reconciler.child.deleted", extra={"step_id": step_id, "reason": reason})
        return True

    async def reconcile(
        self,
        parent: Step,
        criteria: Sequence[Criterion],
        *,
        force: bool = False,
        assignments: Sequence[Assignment] = (),
        files: Mapping[str, str] | None = None,
    ) -> ReconcileResult:
        if parent.id is None:
            msg = "parent step must be persisted before reconciliation"
            raise ValueError(msg)
        parent_id = parent.id
        child_files = dict(files or {})
        created = updated = deleted = unchanged = 0

        # Drop unparseable children before grouping so they never shadow a criterion.
        groups: dict[str, list[tuple[Step, RubricShellConfig]]] = {}
        for child in await self.store.list_generated_by(parent_id):
            config = _child_config_or_none(child)
            if config is None:
                if child.id is not None and await self._delete(child.id, reason="unparseable"):
                    deleted += 1
                continue
            groups.setdefault(config.criterion_id, []).append((child, config))

        task = await self.store.get_task(parent.task_id)
        raw_map = (task.settings or {}).get(TASK_HASH_MAP_KEY)
        stored_hashes: dict[str, str] = dict(raw_map) if isinstance(raw_map, dict) else {}
        hashes = dict(stored_hashes)

        current_titles: set[str] = set()
        for criterion in criteria:
            if criterion.title in current_titles:
                logger.warning(
                    "reconciler.criterion.duplicate_title",
                    extra={"step_id": parent_id, "criterion_id": criterion.title},
                )
                continue
            current_titles.add(criterion.title)

            current_hash = self.hasher.criterion_hash(criterion)
            previous_hash = stored_hashes.get(criterion.title)
            needs_upsert = force or previous_hash is None or previous_hash != current_hash
            desired = self.desired_config(
                parent_id,
                criterion,
                assignments=assignments,
                files=child_files,
                rerun=force or needs_upsert,
            )

            existing = groups.get(criterion.title, [])
            if not existing:
                await self.store.create(
                    parent.task_id,
                    criterion.title,
                    {CHILD_TYPE_KEY: dump_config(desired)},
                )
                hashes[criterion.title] = current_hash
                created += 1
                logger.info(
                    "reconciler.child.created",
                    extra={"step_id": parent_id, "criterion_id": criterion.title},
                )
                continue

            keep, keep_config = existing[0]
            for duplicate, _ in existing[1:]:
                if duplicate.id is not None and await self._delete(duplicate.id, reason="duplicate"):
                    deleted += 1

            if needs_upsert or _definition(keep_config) != _definition(desired):
                merged = dict((keep.settings or {}).get(CHILD_TYPE_KEY) or {})
                merged.update(_definition(desired))
                merged["rerun"] = keep_config.rerun or force or needs_upsert
                merged_config = RubricShellConfig.model_validate(merged)
                if keep.id is None:
                    continue
                await self.store.update_settings(
                    keep.id,
                    {CHILD_TYPE_KEY: dump_config(merged_config)},
                    title=criterion.title,
                )
                updated += 1
                logger.info(
                    "reconciler.child.updated",
                    extra={"step_id": keep.id, "criterion_id": criterion.title},
                )
            else:
                unchanged += 1
            hashes[criterion.title] = current_hash

        removed_titles = (set(stored_hashes) | set(groups)) - current_titles
        for title in sorted(removed_titles):
            for child, _ in groups.get(title, []):
                if child.id is not None and await self._delete(child.id, reason="criterion_removed"):
                    deleted += 1
            hashes.pop(title, None)

        if hashes != stored_hashes:
            await self.store.update_task_settings(parent.task_id, {TASK_HASH_MAP_KEY: hashes})

        result = ReconcileResult(created=created, updated=updated, deleted=deleted, unchanged=unchanged)
        logger.info(
            "reconciler.done",
            extra={
                "step_id": parent_id,
                "created_count": result.created,
                "updated_count": result.updated,
                "deleted_count": result.deleted,
                "unchanged_count": result.unchanged,
            },
        )
        return result


__all__ = ["CHILD_TYPE_KEY", "CriteriaReconciler", "ReconcileResult", "TASK_HASH_MAP_KEY"]
