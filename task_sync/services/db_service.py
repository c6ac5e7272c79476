"""Base class for services bound to one async DB session."""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from sqlmodel import SQLModel
    from sqlmodel.ext.asyncio.session import AsyncSession

ModelT = TypeVar("ModelT", bound="SQLModel")


class TaskSyncDBService:
    """Hold the caller-owned session and common write helpers."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add_commit_refresh(self, row: ModelT) -> ModelT:
        self.session.add(row)
        await self.session.commit()
        await self.session.refresh(row)
        return row
