"""FastAPI application exposing read-only task, step and report routes."""

from __future__ import annotations

from fastapi import APIRouter, FastAPI

from task_sync.api.report import router as report_router
from task_sync.api.steps import router as steps_router
from task_sync.api.tasks import router as tasks_router
from task_sync.api.updates import router as updates_router
from task_sync.core.logging import configure_logging

configure_logging()

app = FastAPI(title="task-sync", version="0.1.0")

api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(tasks_router)
api_v1.include_router(steps_router)
api_v1.include_router(report_router)
api_v1.include_router(updates_router)
app.include_router(api_v1)


@app.get("/healthz", tags=["health"])
async def healthz() -> dict[str, bool]:
    return {"ok": True}
