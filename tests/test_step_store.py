# ruff: noqa: S101
from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel, col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from task_sync.models.websocket_updates import WebsocketUpdate
from task_sync.services.step_store import (
    StepNotFoundError,
    StepStore,
    TaskNotFoundError,
    generated_by_of,
)


async def _create_schema(engine: AsyncEngine) -> None:
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)


def test_generated_by_of_reads_any_type_block() -> None:
    assert generated_by_of({"rubric_shell": {"generated_by": 7}}) == "7"
    assert generated_by_of({"docker_shell": {"generated_by": "12"}}) == "12"
    assert generated_by_of({"rubric_shell": {"command": "x"}}) is None
    assert generated_by_of(None) is None


@pytest.mark.asyncio
async def test_task_lifecycle_and_lookup_by_name_or_id() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        task = await store.create_task(name="parser-task", local_path="/srv/parser")
        assert task.id is not None

        assert (await store.resolve_task("parser-task")).id == task.id
        assert (await store.resolve_task(str(task.id))).id == task.id
        with pytest.raises(TaskNotFoundError):
            await store.resolve_task("missing-task")
        with pytest.raises(ValueError, match="invalid task status"):
            await store.create_task(name="bad", status="paused")

        await store.set_task_status(task.id, "inactive")
        assert (await store.get_task(task.id)).status == "inactive"

    await engine.dispose()


@pytest.mark.asyncio
async def test_update_task_settings_deep_merges_docker_block() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        task = await store.create_task(
            name="docker-task",
            settings={"docker": {"platform": "linux/amd64", "image_tag": "old"}, "app_folder": "/app"},
        )
        assert task.id is not None

        merged = await store.update_task_settings(
            task.id,
            {"docker": {"image_tag": "new", "image_hash": "sha256:abc"}, "rubric_set": {"c1": "h"}},
        )

        assert merged["docker"] == {"platform": "linux/amd64", "image_tag": "new", "image_hash": "sha256:abc"}
        assert merged["app_folder"] == "/app"
        assert (await store.get_task(task.id)).settings == merged
        updates = list(await session.exec(select(WebsocketUpdate)))
        assert [update.update_type for update in updates] == ["task_settings"]

    await engine.dispose()


@pytest.mark.asyncio
async def test_step_crud_and_result_updates() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        task = await store.create_task(name="crud-task")
        step_id = await store.create("crud-task", "check files", {"file_exists": {"files": {"a.txt": ""}}})

        await store.update_result(step_id, {"result": "failure", "message": "missing"})
        step = await store.get(step_id)
        assert step.result_status == "failure"
        assert step.task_id == task.id

        await store.update_settings(step_id, {"file_exists": {"files": {"b.txt": ""}}}, title="renamed")
        step = await store.get(step_id)
        assert step.title == "renamed"
        assert step.settings == {"file_exists": {"files": {"b.txt": ""}}}

        await store.clear_results(step_id)
        assert (await store.get(step_id)).result_status is None

        await store.set_status(step_id, "disabled")
        assert (await store.get(step_id)).status == "disabled"

        feed = list(await session.exec(select(WebsocketUpdate).order_by(col(WebsocketUpdate.id))))
        assert feed[-1].update_type == "step_result"
        assert feed[-1].payload == {"result": "failure", "message": "missing"}

        await store.delete(step_id)
        with pytest.raises(StepNotFoundError):
            await store.get(step_id)
        with pytest.raises(StepNotFoundError):
            await store.delete(step_id)
        with pytest.raises(StepNotFoundError):
            await store.update_result(step_id, {"result": "success"})

    await engine.dispose()


@pytest.mark.asyncio
async def test_list_queries_filter_by_type_task_status_and_parent() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await _create_schema(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async with session_maker() as session:
        store = StepStore(session)
        active = await store.create_task(name="active-task")
        inactive = await store.create_task(name="inactive-task", status="inactive")
        assert active.id is not None
        assert inactive.id is not None

        parent_id = await store.create(active.id, "rubric", {"rubric_set": {"file": "rubric.md"}})
        child_id = await store.create(
            active.id,
            "crit",
            {"rubric_shell": {"command": "true", "generated_by": str(parent_id)}},
        )
        await store.create(inactive.id, "crit", {"rubric_shell": {"command": "true"}})

        active_shell = await store.list_by_type_key("rubric_shell")
        all_shell = await store.list_by_type_key("rubric_shell", active_only=False)
        children = await store.list_generated_by(parent_id)

        assert [step.id for step in active_shell] == [child_id]
        assert len(all_shell) == 2
        assert [step.id for step in children] == [child_id]
        assert [step.id for step in await store.list_steps(task_id=active.id)] == [parent_id, child_id]

    await engine.dispose()
