"""Funding repository: read access for the ``fundings`` table."""

from typing import List

from sqlalchemy.future import select

from marketplace.models.funding import Funding
from marketplace.repositories.base import BaseRepository


class FundingRepository(BaseRepository[Funding]):
    """
    Concrete repository for :class:`Funding` entities.

    Fundings are written only through their Contract aggregate, so this
    repository is used for reads.
    """

    async def get_by_contract_id(self, contract_id: int) -> List[Funding]:
        stmt = select(self.model).where(self.model.contract_id == contract_id)
        return await self._list(stmt.order_by(self.model.id))

    async def get_by_profile_id(self, profile_id: int) -> List[Funding]:
        stmt = select(self.model).where(self.model.profile_id == profile_id)
        return await self._list(stmt.order_by(self.model.id))
