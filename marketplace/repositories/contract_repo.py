"""
Contract repository: data access for the ``contracts`` table.

``Contract.fundings`` is loaded with ``selectin`` and every query here runs
with ``populate_existing``, so a contract handed back by this repository
always carries the fundings currently in the store, never a stale list left
in the session's identity map.
"""

from typing import List, Optional

from sqlalchemy.future import select

from marketplace.models.contract import Contract
from marketplace.models.funding import Funding
from marketplace.repositories.base import BaseRepository


class ContractRepository(BaseRepository[Contract]):
    """Concrete repository for :class:`Contract` entities."""

    async def get_by_request_id(self, request_id: int) -> Optional[Contract]:
        contracts = await self._list(select(self.model).where(self.model.request_id == request_id))
        return contracts[0] if contracts else None

    async def get_by_profile_id(self, profile_id: int) -> List[Contract]:
        """Contracts in which ``profile_id`` holds at least one funding."""
        funded = select(Funding.contract_id).where(Funding.profile_id == profile_id)
        stmt = select(self.model).where(self.model.id.in_(funded)).order_by(self.model.id)
        return await self._list(stmt)
