"""
Funding service: read-side access to investor fundings.

Fundings are created only by ``Contract.fund()`` (through
:class:`ContractService` or :class:`SettlementService`); this service exposes
the lookups investors and contract owners need.
"""

import logging
from typing import List

from marketplace.core.exceptions import NotFoundException
from marketplace.models.funding import Funding
from marketplace.repositories.contract_repo import ContractRepository
from marketplace.repositories.funding_repo import FundingRepository

logger = logging.getLogger(__name__)


class FundingService:
    def __init__(self, funding_repo: FundingRepository, contract_repo: ContractRepository):
        self._repo = funding_repo
        self._contract_repo = contract_repo

    # ── Queries ──

    async def get_funding(self, funding_id: int) -> Funding:
        funding = await self._repo.get(funding_id)
        if not funding:
            raise NotFoundException("Funding", funding_id)
        return funding

    async def get_fundings_by_contract_id(self, contract_id: int) -> List[Funding]:
        """
        Fundings of one contract, oldest first.

        The contract is validated first so the caller gets a clear 404
        instead of an empty list when the contract does not exist.
        """
        if not await self._contract_repo.get(contract_id):
            raise NotFoundException("Contract", contract_id)
        return await self._repo.get_by_contract_id(contract_id)

    async def get_fundings_by_profile_id(self, profile_id: int) -> List[Funding]:
        return await self._repo.get_by_profile_id(profile_id)
