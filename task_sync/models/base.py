"""Shared SQLModel base with a small query manager."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from sqlmodel import SQLModel, col, select

if TYPE_CHECKING:
    from sqlalchemy.sql.elements import ColumnElement
    from sqlmodel.ext.asyncio.session import AsyncSession
    from sqlmodel.sql.expression import SelectOfScalar

ModelT = TypeVar("ModelT", bound="QueryModel")


class QuerySet(Generic[ModelT]):
    """Lazily built select statement bound to one model class."""

    def __init__(self, model: type[ModelT], statement: SelectOfScalar[ModelT]) -> None:
        self.model = model
        self.statement = statement

    def filter(self, *clauses: ColumnElement[bool]) -> QuerySet[ModelT]:
        return QuerySet(self.model, self.statement.where(*clauses))

    def order_by(self, *clauses: Any) -> QuerySet[ModelT]:
        return QuerySet(self.model, self.statement.order_by(*clauses))

    def fresh(self) -> QuerySet[ModelT]:
        """Overwrite already-loaded instances with the row values read back."""
        return QuerySet(self.model, self.statement.execution_options(populate_existing=True))

    async def first(self, session: AsyncSession) -> ModelT | None:
        return (await session.exec(self.statement)).first()

    async def all(self, session: AsyncSession) -> list[ModelT]:
        return list(await session.exec(self.statement))


class ModelManager(Generic[ModelT]):
    """Entry point for ``Model.objects`` queries."""

    def __init__(self, model: type[ModelT]) -> None:
        self.model = model

    def all(self) -> QuerySet[ModelT]:
        return QuerySet(self.model, select(self.model))

    def by_id(self, obj_id: Any) -> QuerySet[ModelT]:
        return self.filter_by(id=obj_id)

    def filter_by(self, **kwargs: Any) -> QuerySet[ModelT]:
        statement = select(self.model)
        for field_name, value in kwargs.items():
            statement = statement.where(col(getattr(self.model, field_name)) == value)
        return QuerySet(self.model, statement)


class _ManagerDescriptor:
    def __get__(self, instance: object, owner: type[ModelT]) -> ModelManager[ModelT]:
        return ModelManager(owner)


class QueryModel(SQLModel):
    """Base for table models exposing ``Model.objects``."""

    objects: ClassVar[_ManagerDescriptor] = _ManagerDescriptor()
