"""
Generic async repository (Data Access Layer).

Implements the Repository pattern on top of SQLAlchemy's ``AsyncSession``.
Concrete repositories inherit from ``BaseRepository[T]`` and add the
entity-specific queries the workflow needs.

Two families of write methods:

- ``create`` / ``update`` / ``delete`` commit immediately.  They serve
  single-row writes.
- ``add`` / ``get_for_update`` never commit.  They are used inside
  :func:`marketplace.db.session.unit_of_work`, which owns the transaction so
  that multi-row cascades commit or roll back as one.

**IntegrityError** is intentionally NOT caught here; each service turns it
into the matching domain error.  **OperationalError** rolls the session back
and is re-raised, so a dirty session never leaks.
"""

import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlmodel import SQLModel

from marketplace.core.resilience import db_circuit_breaker

logger = logging.getLogger(__name__)

ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """
    Generic CRUD repository for SQLModel entities.

    Every database call is routed through ``db_circuit_breaker`` so that a
    failing database is fast-failed instead of waited on.
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    async def _execute_with_circuit_breaker(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        return await db_circuit_breaker.call(func, *args, **kwargs)

    async def _commit(self, action: str) -> None:
        try:
            await self.db.commit()
        except OperationalError:
            await self.db.rollback()
            logger.error("OperationalError during %s for %s", action, self.model.__name__)
            raise

    # ── Reads ──

    async def get(self, id: Any) -> Optional[ModelType]:
        """Fetch a single entity by primary key, re-reading it from the store."""

        async def _get() -> Optional[ModelType]:
            return await self.db.get(self.model, id, populate_existing=True)

        return await self._execute_with_circuit_breaker(_get)

    async def get_for_update(self, id: Any) -> Optional[ModelType]:
        """
        Fetch and row-lock an entity for the rest of the current transaction.

        ``FOR UPDATE`` is a no-op on SQLite; callers pair it with a
        :class:`~marketplace.core.locks.KeyedLock`.
        """

        async def _get() -> Optional[ModelType]:
            stmt = (
                select(self.model)
                .where(self.model.id == id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            result = await self.db.execute(stmt)
            return result.scalars().first()

        return await self._execute_with_circuit_breaker(_get)

    async def get_all(self, skip: int = 0, limit: int = 100) -> List[ModelType]:
        """Paginated list ordered by primary key for stable pages."""

        async def _get_all() -> List[ModelType]:
            pk_columns = self.model.__table__.primary_key.columns
            stmt = select(self.model).order_by(*pk_columns).offset(skip).limit(limit)
            result = await self.db.execute(stmt)
            return list(result.scalars().all())

        return await self._execute_with_circuit_breaker(_get_all)

    async def count(self) -> int:
        async def _count() -> int:
            stmt = select(func.count()).select_from(self.model)
            result = await self.db.execute(stmt)
            return result.scalar_one()

        return await self._execute_with_circuit_breaker(_count)

    async def _list(self, stmt: Any) -> List[ModelType]:
        """Run a select built by a subclass and return the entities."""

        async def _run() -> List[ModelType]:
            result = await self.db.execute(stmt.execution_options(populate_existing=True))
            return list(result.scalars().all())

        return await self._execute_with_circuit_breaker(_run)

    # ── Writes inside a unit of work (no commit) ──

    async def add(self, entity: ModelType) -> ModelType:
        """Stage an entity and flush it so it gets its primary key."""

        async def _add() -> ModelType:
            self.db.add(entity)
            await self.db.flush()
            return entity

        return await self._execute_with_circuit_breaker(_add)

    # ── Self-committing writes ──

    async def create(self, obj_in: ModelType) -> ModelType:
        """Insert a new entity, commit, and return the refreshed instance."""

        async def _create() -> ModelType:
            self.db.add(obj_in)
            await self._commit("create")
            await self.db.refresh(obj_in)
            return obj_in

        return await self._execute_with_circuit_breaker(_create)

    async def update(self, entity: ModelType) -> ModelType:
        """Persist changes to an entity the caller has already mutated."""

        async def _update() -> ModelType:
            merged = await self.db.merge(entity)
            await self._commit("update")
            await self.db.refresh(merged)
            return merged

        return await self._execute_with_circuit_breaker(_update)

    async def delete(self, id: Any) -> bool:
        """Delete by primary key; ``False`` if the entity did not exist."""

        async def _delete() -> bool:
            entity = await self.db.get(self.model, id)
            if entity is None:
                return False
            await self.db.delete(entity)
            await self._commit("delete")
            return True

        return await self._execute_with_circuit_breaker(_delete)
