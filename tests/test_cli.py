# ruff: noqa: S101
from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel

from task_sync.cli.main import apply_assignment, main, parse_assignment, render_tree
from task_sync.models.steps import Step


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("task_sync.cli.main.configure_logging", lambda: None)


async def _create_schema(engine: AsyncEngine) -> None:
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)


def _database_url(tmp_path: Path) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'task-sync.db'}"

    async def _init() -> None:
        engine = create_async_engine(url)
        await _create_schema(engine)
        await engine.dispose()

    asyncio.run(_init())
    return url


def _run(url: str, *argv: str) -> int:
    return main(["--database-url", url, *argv])


def test_parse_assignment_falls_back_to_plain_strings() -> None:
    assert parse_assignment("rubric_shell.score=3") == (["rubric_shell", "score"], 3)
    assert parse_assignment("rubric_shell.command=pytest -k x") == (["rubric_shell", "command"], "pytest -k x")
    assert parse_assignment('docker_shell.command=[{"ls": "ls"}]') == (["docker_shell", "command"], [{"ls": "ls"}])
    with pytest.raises(ValueError, match="path=value"):
        parse_assignment("no-equals-sign")


def test_apply_assignment_creates_nested_objects_without_mutating_input() -> None:
    original = {"docker_pull": {"image_tag": "a"}}

    updated = apply_assignment(original, ["docker_pull", "triggers", "image_id"], "sha256:x")

    assert updated == {"docker_pull": {"image_tag": "a", "triggers": {"image_id": "sha256:x"}}}
    assert original == {"docker_pull": {"image_tag": "a"}}


def test_render_tree_nests_dependents_under_parents() -> None:
    steps = [
        Step(id=1, task_id=1, title="build", settings={"docker_build": {}}),
        Step(id=2, task_id=1, title="shell", settings={"docker_shell": {"depends_on": [1]}}),
        Step(id=3, task_id=1, title="broken", settings={"mystery": {}}),
        Step(
            id=4,
            task_id=1,
            title="grade",
            settings={"rubric_shell": {"depends_on": [2]}},
            results={"result": "success"},
        ),
    ]

    assert render_tree(steps) == [
        "- [1] build <docker_build> pending",
        "  - [2] shell <docker_shell> pending",
        "    - [4] grade <rubric_shell> success",
        "- [3] broken <?> pending",
    ]


def test_task_and_step_management_commands(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    url = _database_url(tmp_path)

    assert _run(url, "task", "create", "parser", "--local-path", str(tmp_path)) == 0
    assert "created task 1: parser" in capsys.readouterr().out

    settings = json.dumps({"rubric_shell": {"command": "pytest", "force": True}})
    assert _run(url, "step", "create", "--task", "parser", "--title", "crit", "--settings", settings) == 0
    assert "created step 1" in capsys.readouterr().out

    assert _run(
        url,
        "step",
        "edit",
        "1",
        "--set",
        "rubric_shell.score=4",
        "--set",
        "rubric_shell.rubric=handles empty input",
        "--set",
        "rubric_shell.force=true",
        "--title",
        "criterion one",
    ) == 0
    capsys.readouterr()

    assert _run(url, "step", "info", "1") == 0
    info = json.loads(capsys.readouterr().out)
    assert info["title"] == "criterion one"
    assert info["step_type"] == "rubric_shell"
    assert info["settings"] == {
        "rubric_shell": {"command": "pytest", "score": 4, "rubric": "handles empty input"},
    }

    assert _run(url, "step", "activate", "1", "--disable") == 0
    assert _run(url, "step", "list") == 0
    listing = capsys.readouterr().out
    assert "rubric_shell\tdisabled" in listing

    assert _run(url, "task", "set-status", "parser", "inactive") == 0
    assert _run(url, "task", "list") == 0
    assert "1\tinactive\tparser" in capsys.readouterr().out

    assert _run(url, "step", "delete", "1") == 0
    assert _run(url, "step", "info", "1") == 1
    assert "step 1 not found" in capsys.readouterr().err


def test_task_edit_sets_paths_and_docker_settings(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    url = _database_url(tmp_path)
    seed = json.dumps({"docker": {"image_hash": "sha256:old"}})
    assert _run(url, "task", "create", "pool", "--settings", seed) == 0
    capsys.readouterr()

    assert _run(
        url,
        "task",
        "edit",
        "pool",
        "--local-path",
        str(tmp_path),
        "--app-folder",
        "/workspace",
        "--image-tag",
        "grader:2",
        "--platform",
        "linux/amd64",
        "--volume-name",
        "pool-data",
        "--set",
        "held_out_test_clean_up=make reset",
    ) == 0
    assert "updated task 1" in capsys.readouterr().out

    assert _run(url, "task", "info", "pool") == 0
    info = json.loads(capsys.readouterr().out)
    assert info["local_path"] == str(tmp_path)
    assert info["settings"] == {
        "docker": {"image_hash": "sha256:old", "image_tag": "grader:2", "platform": "linux/amd64"},
        "app_folder": "/workspace",
        "volume_name": "pool-data",
        "held_out_test_clean_up": "make reset",
    }


def test_cleanup_legacy_results(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    url = _database_url(tmp_path)
    assert _run(url, "task", "create", "legacy") == 0
    legacy = json.dumps({"rubric_shell": {"command": "pytest", "results": {"solution1.patch": "Pass"}}})
    current = json.dumps({"rubric_shell": {"command": "pytest -k two"}})
    assert _run(url, "step", "create", "--task", "legacy", "--title", "old", "--settings", legacy) == 0
    assert _run(url, "step", "create", "--task", "legacy", "--title", "new", "--settings", current) == 0
    capsys.readouterr()

    assert _run(url, "cleanup", "legacy-results") == 0
    output = capsys.readouterr().out
    assert "cleaned step 1" in output
    assert "cleaned 1 steps" in output

    assert _run(url, "step", "info", "1") == 0
    assert json.loads(capsys.readouterr().out)["settings"] == {"rubric_shell": {"command": "pytest"}}


def test_invalid_settings_are_rejected(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    url = _database_url(tmp_path)
    assert _run(url, "task", "create", "alpha") == 0

    ambiguous = json.dumps({"docker_build": {}, "docker_pull": {}})
    assert _run(url, "step", "create", "--task", "alpha", "--title", "x", "--settings", ambiguous) == 1
    assert "multiple type keys" in capsys.readouterr().err
    assert _run(url, "step", "create", "--task", "alpha", "--title", "x", "--settings", "[1]") == 1
    assert _run(url, "step", "create", "--task", "missing", "--title", "x", "--settings", "{}") == 1


def test_run_steps_and_report(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    url = _database_url(tmp_path)
    (tmp_path / "present.txt").write_text("x", encoding="utf-8")
    assert _run(url, "task", "create", "files", "--local-path", str(tmp_path)) == 0
    found = json.dumps({"file_exists": {"files": {"present.txt": ""}}})
    missing = json.dumps({"file_exists": {"files": {"absent.txt": ""}}})
    assert _run(url, "step", "create", "--task", "files", "--title", "found", "--settings", found) == 0
    assert _run(url, "step", "create", "--task", "files", "--title", "missing", "--settings", missing) == 0
    capsys.readouterr()

    assert _run(url, "run-steps", "--step-id", "1") == 0
    assert capsys.readouterr().out.strip() == "step 1: executed"
    assert _run(url, "run-steps", "--step-id", "99") == 1

    assert _run(url, "run-steps") == 0
    capsys.readouterr()

    assert _run(url, "report", "--json") == 0
    report = json.loads(capsys.readouterr().out)
    assert report["tasks"][0]["counts"] == {"failure": 1, "success": 1}

    assert _run(url, "report") == 0
    text = capsys.readouterr().out
    assert "Task 1: files [active] failure=1, success=1" in text
    assert "file not found: absent.txt" in text


def test_force_requires_step_id() -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["run-steps", "--force"])

    assert exc_info.value.code == 2
