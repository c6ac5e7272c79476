"""Re-run decisions from stored fingerprints versus observed state."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from task_sync.core.config import settings
from task_sync.core.logging import get_logger
from task_sync.services.hashing import ContentHasher, EmptyFileError, HashTargetNotFoundError

if TYPE_CHECKING:
    from task_sync.services.step_types import Triggers

logger = get_logger(__name__)


class ContainerInspector(Protocol):
    """Read-only view of the container runtime used for trigger checks."""

    async def exists(self, name: str) -> bool: ...

    async def volume_exists(self, name: str) -> bool: ...

    async def inspect_image(self, container: str) -> tuple[str, bool]: ...

    async def resolve_image_id(self, tag: str) -> str | None: ...


@dataclass(frozen=True, slots=True)
class TriggerState:
    """Previously stored observations for one step."""

    files: Mapping[str, str] = field(default_factory=dict)
    containers: Mapping[str, str] = field(default_factory=dict)
    volumes: tuple[str, ...] = ()
    image_tag: str = ""
    image_id: str = ""

    @classmethod
    def from_triggers(cls, triggers: Triggers, *, files: Mapping[str, str] | None = None) -> TriggerState:
        return cls(
            files=dict(triggers.files if files is None else files),
            containers=dict(triggers.containers),
            volumes=tuple(triggers.volumes),
            image_tag=triggers.image_tag,
            image_id=triggers.image_id,
        )


@dataclass(frozen=True, slots=True)
class TriggerDecision:
    should_run: bool
    reasons: tuple[str, ...] = ()
    # Freshly observed hashes for every watched file; "" where unreadable.
    file_hashes: dict[str, str] = field(default_factory=dict)


def image_ids_match(stored: str, resolved: str) -> bool:
    """Compare image ids allowing either side to be an abbreviated prefix."""
    left = stored.strip()
    right = resolved.strip()
    if not left or not right:
        return False
    return left.startswith(right) or right.startswith(left)


class TriggerEvaluator:
    """Compute file, identity and topology signals; any one of them fires.

    Hashing or inspection errors count as fired.
    """

    def __init__(
        self,
        inspector: ContainerInspector,
        *,
        hasher: ContentHasher | None = None,
        optional_files: Iterable[str] | None = None,
    ) -> None:
        self.inspector = inspector
        self.hasher = hasher or ContentHasher()
        self.optional_files = frozenset(
            settings.optional_trigger_file_set() if optional_files is None else optional_files,
        )

    def _is_optional(self, path: str) -> bool:
        return path in self.optional_files or Path(path).name in self.optional_files

    def file_signal(self, base_path: str | Path, stored: Mapping[str, str]) -> tuple[bool, list[str], dict[str, str]]:
        base = Path(base_path)
        fired = False
        reasons: list[str] = []
        hashes: dict[str, str] = {}
        for relative, stored_hash in stored.items():
            try:
                current = self.hasher.hash_file(base / relative)
            except (HashTargetNotFoundError, EmptyFileError, OSError) as exc:
                hashes[relative] = ""
                if self._is_optional(relative):
                    logger.debug("triggers.file.optional_missing", extra={"path": relative})
                    continue
                fired = True
                reasons.append(f"file unreadable: {relative} ({exc})")
                continue
            hashes[relative] = current
            if current != stored_hash:
                fired = True
                reasons.append(f"file changed: {relative}")
        return fired, reasons, hashes

    async def identity_signal(self, state: TriggerState) -> tuple[bool, list[str]]:
        if not state.image_tag:
            return False, []
        try:
            resolved = await self.inspector.resolve_image_id(state.image_tag)
        except Exception as exc:
            return True, [f"image inspection failed: {state.image_tag} ({exc})"]
        if not resolved:
            return True, [f"image missing: {state.image_tag}"]
        if not image_ids_match(state.image_id, resolved):
            return True, [f"image changed: {state.image_tag}"]
        return False, []

    async def topology_signal(self, state: TriggerState) -> tuple[bool, list[str]]:
        reasons: list[str] = []
        for key, container in state.containers.items():
            try:
                present = await self.inspector.exists(container)
            except Exception as exc:
                reasons.append(f"container inspection failed: {key}={container} ({exc})")
                continue
            if not present:
                reasons.append(f"container missing: {key}={container}")
        for volume in state.volumes:
            try:
                present = await self.inspector.volume_exists(volume)
            except Exception as exc:
                reasons.append(f"volume inspection failed: {volume} ({exc})")
                continue
            if not present:
                reasons.append(f"volume missing: {volume}")
        return bool(reasons), reasons

    async def should_run(
        self,
        base_path: str | Path,
        state: TriggerState,
        *,
        force: bool = False,
    ) -> TriggerDecision:
        if force:
            return TriggerDecision(
                should_run=True,
                reasons=("forced",),
                file_hashes=self.refresh_file_hashes(base_path, state.files),
            )
        file_fired, file_reasons, hashes = self.file_signal(base_path, state.files)
        identity_fired, identity_reasons = await self.identity_signal(state)
        topology_fired, topology_reasons = await self.topology_signal(state)
        reasons = (*file_reasons, *identity_reasons, *topology_reasons)
        decision = TriggerDecision(
            should_run=file_fired or identity_fired or topology_fired,
            reasons=reasons,
            file_hashes=hashes,
        )
        if decision.should_run:
            logger.info("triggers.fired", extra={"reasons": list(reasons)})
        return decision

    def refresh_file_hashes(self, base_path: str | Path, files: Iterable[str]) -> dict[str, str]:
        """Recompute hashes after a successful run; failures are stored as ``""``."""
        base = Path(base_path)
        refreshed: dict[str, str] = {}
        for relative in files:
            try:
                refreshed[relative] = self.hasher.hash_file(base / relative)
            except OSError:
                refreshed[relative] = ""
        return refreshed


__all__ = [
    "ContainerInspector",
    "TriggerDecision",
    "TriggerEvaluator",
    "TriggerState",
    "image_ids_match",
]
