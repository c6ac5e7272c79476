# ruff: noqa: S101
from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from task_sync.services.criteria import Criterion
from task_sync.services.hashing import (
    EmptyFileError,
    HashTargetNotFoundError,
    criterion_hash,
    hash_fields,
    hash_file,
)


def test_hash_file_matches_sha256_of_contents(tmp_path: Path) -> None:
    target = tmp_path / "rubric.md"
    target.write_bytes(b"### #1: criterion\n")

    assert hash_file(target) == hashlib.sha256(b"### #1: criterion\n").hexdigest()


def test_hash_file_rejects_missing_and_directories(tmp_path: Path) -> None:
    with pytest.raises(HashTargetNotFoundError):
        hash_file(tmp_path / "missing.txt")
    with pytest.raises(HashTargetNotFoundError):
        hash_file(tmp_path)


def test_hash_file_rejects_empty_files(tmp_path: Path) -> None:
    target = tmp_path / "empty.patch"
    target.write_bytes(b"")

    with pytest.raises(EmptyFileError):
        hash_file(target)


def test_hash_fields_is_order_sensitive_and_renders_booleans() -> None:
    forward = hash_fields([("a", 1), ("b", True)])
    reverse = hash_fields([("b", True), ("a", 1)])

    assert forward != reverse
    assert forward == hashlib.sha256(b"a:1|b:true").hexdigest()
    assert hash_fields([("x", None)]) == hashlib.sha256(b"x:").hexdigest()


def test_criterion_hash_changes_with_definition_fields() -> None:
    base = Criterion(title="c1", counter="1", score=3, required=True, rubric="r", held_out_test="pytest -k a")

    assert criterion_hash(base) == criterion_hash(
        Criterion(title="other", counter="1", score=3, required=True, rubric="r", held_out_test="pytest -k a"),
    )
    assert criterion_hash(base) != criterion_hash(
        Criterion(title="c1", counter="1", score=4, required=True, rubric="r", held_out_test="pytest -k a"),
    )
    assert criterion_hash(base) != criterion_hash(
        Criterion(title="c1", counter="2", score=3, required=True, rubric="r", held_out_test="pytest -k a"),
    )
    assert criterion_hash(base, include_counter=False) != criterion_hash(base)
