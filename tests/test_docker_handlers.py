# ruff: noqa: S101
from __future__ import annotations

from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from task_sync.core.time import parse_timestamp, utcnow
from task_sync.services.dispatcher import StepDispatcher
from task_sync.services.docker_driver import CommandResult, ContainerCommandError
from task_sync.services.handlers.docker_pool import INDEX_LOCK_CHECK, KEEP_ALIVE
from task_sync.services.step_store import StepStore


class _FakeDocker:
    def __init__(
        self,
        *,
        images: dict[str, str] | None = None,
        containers: dict[str, str] | None = None,
        build_error: str = "",
        failing_commands: set[str] | None = None,
        stopped: set[str] | None = None,
        outputs: dict[str, str] | None = None,
    ) -> None:
        self.images = dict(images or {})
        # container id -> image id
        self.containers = dict(containers or {})
        self.build_error = build_error
        self.failing_commands = failing_commands or set()
        self.stopped = set(stopped or ())
        self.outputs = dict(outputs or {})
        self.runs: list[tuple[str, str, dict[str, str], str | None, tuple[str, ...], tuple[str, ...]]] = []
        self.started: list[str] = []
        self.removed: list[str] = []
        self.builds: list[tuple[str, str, tuple[str, ...], str | None]] = []
        self.pulls: list[tuple[str, str | None]] = []
        self.commands: list[tuple[str, str]] = []
        self.next_image_id = "sha256:built0001"

    async def exists(self, name: str) -> bool:
        return name in self.containers

    async def volume_exists(self, name: str) -> bool:
        return False

    async def inspect_image(self, container: str) -> tuple[str, bool]:
        running = container in self.containers and container not in self.stopped
        return self.containers.get(container, ""), running

    async def resolve_image_id(self, tag: str) -> str | None:
        return self.images.get(tag)

    async def build(
        self,
        image_tag: str,
        context: str | Path,
        *,
        parameters: Sequence[str] = (),
        platform: str | None = None,
    ) -> CommandResult:
        self.builds.append((image_tag, str(context), tuple(parameters), platform))
        if self.build_error:
            raise ContainerCommandError(self.build_error, output="step 3/7 failed")
        self.images[image_tag] = self.next_image_id
        return CommandResult(args=("build",), returncode=0, stdout="", stderr="")

    async def pull(self, image_tag: str, *, platform: str | None = None) -> CommandResult:
        self.pulls.append((image_tag, platform))
        self.images[image_tag] = self.next_image_id
        return CommandResult(args=("pull",), returncode=0, stdout="", stderr="")

    async def exec_shell(
        self,
        container: str,
        command: str,
        *,
        workdir: str | None = None,
        shell: Sequence[str] = ("sh", "-c"),
    ) -> CommandResult:
        self.commands.append((container, command))
        if command in self.failing_commands:
            return CommandResult(args=("exec",), returncode=1, stdout="", stderr="boom")
        if command in self.outputs:
            return CommandResult(args=("exec",), returncode=0, stdout=self.outputs[command], stderr="")
        return CommandResult(args=("exec",), returncode=0, stdout=f"ran {command}\n", stderr="")

    async def copy_into(self, container: str, source: str | Path, destination: str) -> CommandResult:
        return CommandResult(args=("cp",), returncode=0, stdout="", stderr="")

    async def find_container_by_ancestor(self, image_tag: str) -> str | None:
        image_id = self.images.get(image_tag)
        for container, container_image in self.containers.items():
            if container_image == image_id:
                return container
        return None

    async def container_image_id(self, container: str) -> str:
        return self.containers[container]

    async def run_container(
        self,
        name: str,
        image: str,
        *,
        mounts: dict[str, str] | None = None,
        platform: str | None = None,
        parameters: Sequence[str] = (),
        command: Sequence[str] = (),
    ) -> str:
        self.runs.append((name, image, dict(mounts or {}), platform, tuple(parameters), tuple(command)))
        self.containers[name] = self.images[image]
        self.stopped.discard(name)
        return f"id-{name}"

    async def start(self, name: str) -> CommandResult:
        self.started.append(name)
        self.stopped.discard(name)
        return CommandResult(args=("start",), returncode=0, stdout="", stderr="")

    async def remove(self, name: str) -> CommandResult:
        self.removed.append(name)
        self.containers.pop(name, None)
        return CommandResult(args=("rm",), returncode=0, stdout="", stderr="")


async def _create_schema(engine: AsyncEngine) -> None:
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)


@pytest.mark.asyncio
async def test_docker_build_builds_once_and_records_identity(tmp_path: Path) -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    (tmp_path / "Dockerfile").write_text("FROM python:3.12\n", encoding="utf-8")

    async with session_maker() as session:
        store = StepStore(session)
        task = await store.create_task(
            name="build-task",
            local_path=str(tmp_path),
            settings={"docker": {"platform": "linux/amd64"}},
        )
        assert task.id is not None
        step_id = await store.create(
            task.id,
            "build",
            {
                "docker_build": {
                    "image_tag": "grader:latest",
                    "parameters": ["--build-arg", "TAG=%%IMAGETAG%%"],
                    "files": {"Dockerfile": ""},
                },
            },
        )
        driver = _FakeDocker()
        dispatcher = StepDispatcher(session, driver=driver)

        assert await dispatcher.dispatch(step_id) == "executed"

        assert driver.builds == [
            ("grader:latest", str(tmp_path), ("--build-arg", "TAG=grader:latest"), "linux/amd64"),
        ]
        step = await store.get(step_id)
        assert step.result_status == "success"
        block = step.settings["docker_build"]
        assert block["image_id"] == "sha256:built0001"
        assert block["files"]["Dockerfile"] != ""
        docker = (await store.get_task(task.id)).settings["docker"]
        assert docker == {"platform": "linux/amd64", "image_tag": "grader:latest", "image_hash": "sha256:built0001"}

        assert await dispatcher.dispatch(step_id) == "executed"
        assert len(driver.builds) == 1

        (tmp_path / "Dockerfile").write_text("FROM python:3.13\n", encoding="utf-8")
        assert await dispatcher.dispatch(step_id) == "executed"
        assert len(driver.builds) == 2

    await engine.dispose()


@pytest.mark.asyncio
async def test_docker_build_failure_is_recorded(tmp_path: Path) -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        task = await store.create_task(name="build-fail", local_path=str(tmp_path))
        assert task.id is not None
        step_id = await store.create(task.id, "build", {"docker_build": {}})
        driver = _FakeDocker(build_error="no space left on device")

        assert await StepDispatcher(session, driver=driver).dispatch(step_id) == "executed"

        step = await store.get(step_id)
        assert driver.builds[0][0] == f"task-sync-step-{step_id}"
        assert step.result_status == "failure"
        assert step.results is not None
        assert step.results["output"] == "step 3/7 failed"

    await engine.dispose()


@pytest.mark.asyncio
async def test_docker_pull_respects_cooldown_unless_forced() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        task = await store.create_task(name="pull-task")
        assert task.id is not None
        step_id = await store.create(task.id, "pull", {"docker_pull": {"image_tag": "registry/app:1"}})
        driver = _FakeDocker(images={"registry/app:1": "sha256:old"})
        dispatcher = StepDispatcher(session, driver=driver)

        assert await dispatcher.dispatch(step_id) == "executed"

        step = await store.get(step_id)
        block = step.settings["docker_pull"]
        assert driver.pulls == [("registry/app:1", None)]
        assert block["image_id"] == "sha256:built0001"
        assert block["prevent_run_before"].endswith("Z")
        not_before = parse_timestamp(block["prevent_run_before"])
        assert not_before is not None
        assert not_before > utcnow() + timedelta(hours=5)

        assert await dispatcher.dispatch(step_id) == "executed"
        assert len(driver.pulls) == 1

        assert await dispatcher.dispatch(step_id, force=True) == "executed"
        assert len(driver.pulls) == 2
        assert (await store.get(step_id)).result_status == "success"

    await engine.dispose()


async def _seed_shell_steps(store: StepStore, shell_settings: dict[str, object]) -> tuple[int, int]:
    task = await store.create_task(name="shell-task")
    assert task.id is not None
    build_id = await store.create(
        task.id,
        "build",
        {"docker_build": {"image_tag": "grader:latest", "image_id": "sha256:abc"}},
    )
    await store.update_result(build_id, {"result": "success", "message": "image built"})
    shell_id = await store.create(
        task.id,
        "shell",
        {"docker_shell": {"depends_on": [{"id": build_id}], **shell_settings}},
    )
    return build_id, shell_id


@pytest.mark.asyncio
async def test_docker_shell_runs_labelled_commands_in_matching_container() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        _, shell_id = await _seed_shell_steps(store, {"command": [{"list": "ls"}, {"status": "git status"}]})
        driver = _FakeDocker(images={"grader:latest": "sha256:abc123"}, containers={"c1": "sha256:abc123"})
        dispatcher = StepDispatcher(session, driver=driver)

        assert await dispatcher.dispatch(shell_id) == "executed"

        step = await store.get(shell_id)
        assert step.result_status == "success"
        assert step.results is not None
        assert [entry["label"] for entry in step.results["outputs"]] == ["list", "status"]
        assert step.results["outputs"][0]["output"] == "ran ls"
        assert driver.commands == [("c1", "ls"), ("c1", "git status")]
        triggers = step.settings["docker_shell"]["triggers"]
        assert triggers == {"image_id": "sha256:abc123", "image_tag": "grader:latest"}

        assert await dispatcher.dispatch(shell_id) == "executed"
        assert len(driver.commands) == 2

    await engine.dispose()


@pytest.mark.asyncio
async def test_docker_shell_reports_failed_commands_and_image_mismatch() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        _, shell_id = await _seed_shell_steps(store, {"command": [{"ok": "ls"}, {"bad": "false"}]})
        failing = _FakeDocker(
            images={"grader:latest": "sha256:abc123"},
            containers={"c1": "sha256:abc123"},
            failing_commands={"false"},
        )

        assert await StepDispatcher(session, driver=failing).dispatch(shell_id) == "executed"

        step = await store.get(shell_id)
        assert step.result_status == "failure"
        assert step.results is not None
        assert step.results["outputs"][1] == {
            "label": "bad",
            "output": "boom",
            "error": "command 'false' exited 1",
        }

        mismatched = _FakeDocker(images={"grader:latest": "sha256:zzz"}, containers={"c9": "sha256:zzz"})
        assert await StepDispatcher(session, driver=mismatched).dispatch(shell_id) == "executed"
        step = await store.get(shell_id)
        assert step.result_status == "failure"
        assert step.results is not None
        assert "image hash mismatch" in step.results["message"]
        assert mismatched.commands == []

    await engine.dispose()


@pytest.mark.asyncio
async def test_docker_shell_falls_back_to_task_docker_on_dependency_cycle() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        task = await store.create_task(
            name="cycle-task",
            settings={"docker": {"image_tag": "grader:latest", "image_hash": "sha256:abc"}},
        )
        assert task.id is not None
        first = await store.create(task.id, "first", {"docker_shell": {"command": [{"ls": "ls"}]}})
        second = await store.create(
            task.id,
            "second",
            {"docker_shell": {"depends_on": [first], "command": [{"pwd": "pwd"}]}},
        )
        await store.update_settings(
            first,
            {"docker_shell": {"depends_on": [second], "command": [{"ls": "ls"}]}},
        )
        await store.set_status(second, "success")
        driver = _FakeDocker(images={"grader:latest": "sha256:abc999"}, containers={"c1": "sha256:abc999"})

        assert await StepDispatcher(session, driver=driver).dispatch(first) == "executed"

        assert (await store.get(first)).result_status == "success"
        assert driver.commands == [("c1", "ls")]

    await engine.dispose()


@pytest.mark.asyncio
async def test_docker_pool_creates_reuses_and_replaces_containers(tmp_path: Path) -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        task = await store.create_task(
            name="pool-task",
            local_path=str(tmp_path),
            settings={
                "docker": {"image_tag": "grader:latest", "platform": "linux/arm64"},
                "app_folder": "/workspace",
            },
        )
        assert task.id is not None
        step_id = await store.create(
            task.id,
            "pool",
            {"docker_pool": {"solutions": 2, "parameters": ["--rm", "--env", "TAG=%%IMAGETAG%%"]}},
        )
        driver = _FakeDocker(images={"grader:latest": "sha256:v1"})
        dispatcher = StepDispatcher(session, driver=driver)
        names = [f"task_{task.id}_volume_{key}" for key in ("original", "golden", "solution1", "solution2")]

        assert await dispatcher.dispatch(step_id) == "executed"

        assert [run[0] for run in driver.runs] == names
        assert driver.runs[0] == (
            names[0],
            "grader:latest",
            {str(tmp_path / "original"): "/workspace"},
            "linux/arm64",
            ("--env", "TAG=grader:latest"),
            KEEP_ALIVE,
        )
        assert driver.runs[1][2] == {str(tmp_path / "volume_golden"): "/workspace"}
        assert driver.runs[3][2] == {str(tmp_path / "volume_solution2"): "/workspace"}
        step = await store.get(step_id)
        assert step.result_status == "success"
        task_settings = (await store.get_task(task.id)).settings
        assert task_settings["containers_map"]["solution1"] == {
            "container_id": f"id-{names[2]}",
            "container_name": names[2],
        }
        assert task_settings["docker_run_parameters"] == ["--rm", "--env", "TAG=%%IMAGETAG%%"]
        assert step.settings["docker_pool"]["image_id"] == "sha256:v1"

        assert await dispatcher.dispatch(step_id) == "executed"
        assert len(driver.runs) == 4
        assert driver.removed == []

        driver.stopped.add(names[2])
        assert await dispatcher.dispatch(step_id) == "executed"
        assert driver.started == [names[2]]
        assert len(driver.runs) == 4

        driver.images["grader:latest"] = "sha256:v2"
        assert await dispatcher.dispatch(step_id) == "executed"
        assert driver.removed == names
        assert [run[0] for run in driver.runs[4:]] == names
        assert (await store.get(step_id)).settings["docker_pool"]["image_id"] == "sha256:v2"

    await engine.dispose()


@pytest.mark.asyncio
async def test_docker_pool_requires_image_and_flags_stale_git_locks(tmp_path: Path) -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        bare = await store.create_task(name="pool-no-image", local_path=str(tmp_path))
        locked = await store.create_task(
            name="pool-locked",
            local_path=str(tmp_path),
            settings={"docker": {"image_tag": "grader:latest"}},
        )
        assert bare.id is not None
        assert locked.id is not None
        bare_step = await store.create(bare.id, "pool", {"docker_pool": {"solutions": 1}})
        locked_step = await store.create(locked.id, "pool", {"docker_pool": {"solutions": 1}})
        driver = _FakeDocker(images={"grader:latest": "sha256:v1"}, outputs={INDEX_LOCK_CHECK: "exists\n"})
        dispatcher = StepDispatcher(session, driver=driver)

        assert await dispatcher.dispatch(bare_step) == "executed"
        assert await dispatcher.dispatch(locked_step) == "executed"

        bare_result = (await store.get(bare_step)).results
        assert bare_result is not None
        assert bare_result["result"] == "failure"
        assert "docker.image_tag" in bare_result["message"]
        locked_result = (await store.get(locked_step)).results
        assert locked_result is not None
        assert locked_result["result"] == "failure"
        assert locked_result["message"] == "git index.lock present in: original, golden, solution1"
        locked_settings = (await store.get_task(locked.id)).settings
        assert set(locked_settings["containers_map"]) == {"original", "golden", "solution1"}

    await engine.dispose()
