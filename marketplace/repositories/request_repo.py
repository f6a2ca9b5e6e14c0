"""
Request repository: data access for the ``requests`` table.

Adds the lookups the workflow engine filters on (profile, type, status and
the ``request_id`` link), plus the row-locking sibling query used by the
proposal-acceptance cascade.
"""

from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.future import select

from marketplace.models.request import Request, RequestStatus, RequestType
from marketplace.repositories.base import BaseRepository


class RequestRepository(BaseRepository[Request]):
    """Concrete repository for :class:`Request` entities."""

    async def get_by_request_id(
        self, request_id: int, request_type: Optional[RequestType] = None
    ) -> List[Request]:
        """Requests linked to ``request_id``, ordered by id."""
        stmt = select(self.model).where(self.model.request_id == request_id)
        if request_type is not None:
            stmt = stmt.where(self.model.type == request_type)
        return await self._list(stmt.order_by(self.model.id))

    async def get_children_for_update(self, request_id: int) -> List[Request]:
        """Row-lock every request linked to ``request_id``, in id order."""
        stmt = (
            select(self.model)
            .where(self.model.request_id == request_id)
            .order_by(self.model.id)
            .with_for_update()
        )
        return await self._list(stmt)

    async def get_by_from_profile_id(
        self,
        profile_id: int,
        request_type: Optional[RequestType] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[Request]:
        stmt = select(self.model).where(self.model.from_profile_id == profile_id)
        return await self._list(self._filter(stmt, request_type, status))

    async def get_by_to_profile_id(
        self,
        profile_id: int,
        request_type: Optional[RequestType] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[Request]:
        stmt = select(self.model).where(self.model.to_profile_id == profile_id)
        return await self._list(self._filter(stmt, request_type, status))

    async def get_by_profile_id(self, profile_id: int) -> List[Request]:
        """Requests the profile sent or received."""
        stmt = select(self.model).where(
            or_(self.model.from_profile_id == profile_id, self.model.to_profile_id == profile_id)
        )
        return await self._list(stmt.order_by(self.model.id))

    async def get_by_type(
        self, request_type: RequestType, status: Optional[RequestStatus] = None
    ) -> List[Request]:
        return await self._list(self._filter(select(self.model), request_type, status))

    async def get_by_status(self, status: RequestStatus) -> List[Request]:
        return await self._list(self._filter(select(self.model), None, status))

    def _filter(self, stmt, request_type: Optional[RequestType], status: Optional[RequestStatus]):
        if request_type is not None:
            stmt = stmt.where(self.model.type == request_type)
        if status is not None:
            stmt = stmt.where(self.model.status == status)
        return stmt.order_by(self.model.id)
