"""Content fingerprints for watched files and criterion definitions."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from task_sync.services.criteria import Criterion

FIELD_DELIMITER = "|"
_CHUNK_SIZE = 1024 * 1024


class HashTargetNotFoundError(FileNotFoundError):
    """Raised when a watched path is missing or is not a regular file."""


class EmptyFileError(OSError):
    """Raised for zero-length files so callers treat them as changed."""


def hash_file(path: str | Path) -> str:
    """Return the SHA-256 hex digest of a file's bytes."""
    target = Path(path)
    if not target.exists():
        msg = f"watched file not found: {target}"
        raise HashTargetNotFoundError(msg)
    if not target.is_file():
        msg = f"watched path is not a regular file: {target}"
        raise HashTargetNotFoundError(msg)
    digest = hashlib.sha256()
    size = 0
    with target.open("rb") as handle:
        while chunk := handle.read(_CHUNK_SIZE):
            size += len(chunk)
            digest.update(chunk)
    if size == 0:
        msg = f"watched file is empty: {target}"
        raise EmptyFileError(msg)
    return digest.hexdigest()


def _render(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def hash_fields(pairs: Iterable[tuple[str, object]]) -> str:
    """Digest ``key:value`` pairs joined in the given order.

    The result is persisted and compared byte-for-byte on later runs, so the
    caller must keep the field order stable.
    """
    joined = FIELD_DELIMITER.join(f"{key}:{_render(value)}" for key, value in pairs)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def criterion_hash(criterion: Criterion, *, include_counter: bool = True) -> str:
    """Hash the definition fields of one rubric criterion."""
    pairs: list[tuple[str, object]] = [
        ("score", criterion.score),
        ("rubric", criterion.rubric),
        ("required", criterion.required),
        ("held_out_test", criterion.held_out_test),
    ]
    if include_counter:
        pairs.append(("counter", criterion.counter))
    return hash_fields(pairs)


class ContentHasher:
    """Injectable wrapper so tests can substitute fingerprints."""

    def hash_file(self, path: str | Path) -> str:
        return hash_file(path)

    def hash_fields(self, pairs: Iterable[tuple[str, object]]) -> str:
        return hash_fields(pairs)

    def criterion_hash(self, criterion: Criterion) -> str:
        return criterion_hash(criterion)


__all__ = [
    "ContentHasher",
    "EmptyFileError",
    "HashTargetNotFoundError",
    "criterion_hash",
    "hash_fields",
    "hash_file",
]
