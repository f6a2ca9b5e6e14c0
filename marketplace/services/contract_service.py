"""
Contract service: lifecycle and funding of the Contract aggregate.

Reads go through :class:`ContractRepository`, which always re-reads
``fundings`` from the store, so ``raised_amount`` / ``outstanding_amount``
are derived from committed state on every call.

Writes that read first (``fund_contract``, ``update_contract_status``,
``disburse_contract``) hold the contract's :class:`KeyedLock` and its row
lock for the whole read-check-write, so two investors racing for the last
units of a contract can never push ``raised_amount`` past the target.
"""

import logging
from typing import Dict, List, Set

from sqlalchemy.exc import IntegrityError

from marketplace.core.exceptions import (
    ConflictException,
    DisburseContractException,
    FundingAmountException,
    InvalidRequestType,
    InvalidStatusTransition,
    NotFoundException,
    RequestIdNotFound,
)
from marketplace.core.locks import KeyedLock, entity_locks
from marketplace.core.resilience import retry_with_backoff
from marketplace.db.session import unit_of_work
from marketplace.models.contract import Contract, ContractStatus
from marketplace.models.funding import Funding
from marketplace.models.request import RequestType
from marketplace.repositories.contract_repo import ContractRepository
from marketplace.repositories.request_repo import RequestRepository
from marketplace.schemas.contract import ContractCreate

logger = logging.getLogger(__name__)


class ContractService:
    """Encapsulates CRUD + business rules for :class:`Contract`."""

    def __init__(
        self,
        contract_repo: ContractRepository,
        request_repo: RequestRepository,
        locks: KeyedLock = entity_locks,
    ):
        self._repo = contract_repo
        self._request_repo = request_repo
        self._locks = locks

    # ── Queries ──

    async def get_all_contracts(self, skip: int = 0, limit: int = 100) -> List[Contract]:
        return await self._repo.get_all(skip=skip, limit=limit)

    async def get_contract(self, contract_id: int) -> Contract:
        """Raises :class:`NotFoundException` if the contract does not exist."""
        contract = await self._repo.get(contract_id)
        if not contract:
            raise NotFoundException("Contract", contract_id)
        return contract

    async def get_contract_by_request_id(self, request_id: int) -> Contract:
        """Raises :class:`RequestIdNotFound` if no contract was derived from ``request_id``."""
        contract = await self._repo.get_by_request_id(request_id)
        if not contract:
            raise RequestIdNotFound(request_id)
        return contract

    async def get_contracts_by_profile_id(self, profile_id: int) -> List[Contract]:
        """Contracts the investor ``profile_id`` has funded."""
        return await self._repo.get_by_profile_id(profile_id)

    # ── Commands ──

    async def create_contract(self, contract_in: ContractCreate) -> Contract:
        """
        Create a NOT_FUNDED contract for a Request-for-Funding.

        Validation sequence:
        1. The referenced request must exist → 404.
        2. It must be an RFF → :class:`InvalidRequestType`.
        3. No contract may exist for it yet → :class:`ConflictException`.
        4. Repayment must exceed target → :class:`ContractAmountsException`.
        """
        request = await self._request_repo.get(contract_in.request_id)
        if not request:
            raise NotFoundException("Request", contract_in.request_id)
        if not request.is_type(RequestType.RFF):
            raise InvalidRequestType(request.id, request.type, expected=RequestType.RFF)
        if await self._repo.get_by_request_id(contract_in.request_id):
            raise _duplicate(contract_in.request_id)

        contract = Contract.create(**contract_in.model_dump())
        try:
            created = await self._repo.create(contract)
        except IntegrityError as exc:
            # Lost a race with another create for the same request.
            await self._repo.db.rollback()
            logger.warning(
                "IntegrityError creating contract for request %s: %s",
                contract_in.request_id,
                exc,
            )
            raise _duplicate(contract_in.request_id)

        logger.info(
            "Created contract %s for request %s (target=%d, repayment=%d)",
            created.id,
            created.request_id,
            created.target_amount,
            created.repayment_amount,
            extra={"entity": "Contract", "entity_id": created.id, "request_id": created.request_id},
        )
        return await self.get_contract(created.id)

    async def update_contract_status(self, contract_id: int, status: ContractStatus) -> Contract:
        """
        Move a contract forward through its lifecycle; never backwards.

        Moving to FUNDS_DISBURSED disburses every funding as well, exactly as
        :meth:`disburse_contract` does.
        """
        async with self._locks.acquire(("contract", contract_id)):
            async with unit_of_work(self._repo.db):
                contract = await self._get_for_update(contract_id)
                check_status_transition(contract, status)
                previous = contract.status
                if status == ContractStatus.FUNDS_DISBURSED:
                    disburse(contract)
                else:
                    contract.status = status

        logger.info(
            "Contract %s status %s → %s",
            contract_id,
            previous.value,
            status.value,
            extra={"entity": "Contract", "entity_id": contract_id, "status": status.value},
        )
        return contract

    @retry_with_backoff()
    async def fund_contract(self, contract_id: int, profile_id: int, amount: int) -> Funding:
        """
        Record ``profile_id``'s funding of ``amount`` against a contract.

        The outstanding amount is re-derived under the contract's locks;
        :class:`FundingAmountException` leaves the contract untouched.
        """
        async with self._locks.acquire(("contract", contract_id)):
            async with unit_of_work(self._repo.db):
                contract = await self._get_for_update(contract_id)
                try:
                    funding = contract.fund(profile_id, amount)
                except FundingAmountException:
                    logger.warning(
                        "Rejected funding of %d for contract %s (outstanding %d)",
                        amount,
                        contract_id,
                        contract.outstanding_amount(),
                        extra={"entity": "Contract", "entity_id": contract_id, "amount": amount},
                    )
                    raise
                await self._repo.db.flush()

        logger.info(
            "Contract %s funded %d by investor %s; status %s",
            contract_id,
            amount,
            profile_id,
            contract.status.value,
            extra={
                "entity": "Contract",
                "entity_id": contract_id,
                "amount": amount,
                "status": contract.status.value,
            },
        )
        return funding

    async def disburse_contract(self, contract_id: int) -> Contract:
        """
        Mark a repaid contract and every one of its fundings as disbursed.

        Raises :class:`DisburseContractException` unless the contract is
        FUNDS_REPAID.  The contract row and all funding rows are written in
        one transaction.
        """
        async with self._locks.acquire(("contract", contract_id)):
            async with unit_of_work(self._repo.db):
                contract = await self._get_for_update(contract_id)
                disburse(contract)

        logger.info(
            "Contract %s disbursed to %d fundings",
            contract_id,
            len(contract.fundings),
            extra={
                "entity": "Contract",
                "entity_id": contract_id,
                "status": contract.status.value,
            },
        )
        return contract

    async def delete_contract(self, contract_id: int) -> None:
        """Delete a contract together with its fundings."""
        await self.get_contract(contract_id)
        await self._repo.delete(contract_id)
        logger.info("Deleted contract %s", contract_id)

    # ── Internal helpers ──

    async def _get_for_update(self, contract_id: int) -> Contract:
        contract = await self._repo.get_for_update(contract_id)
        if not contract:
            raise NotFoundException("Contract", contract_id)
        return contract


def _duplicate(request_id: int) -> ConflictException:
    return ConflictException(
        f"A contract for request {request_id} already exists",
        details={"request_id": request_id},
    )


def disburse(contract: Contract) -> None:
    """Disburse a loaded contract; raises unless it is FUNDS_REPAID."""
    if contract.status != ContractStatus.FUNDS_REPAID:
        raise DisburseContractException(contract.id, contract.status)
    contract.disburse()


# ── Status transition rules ──

_ALLOWED_TRANSITIONS: Dict[ContractStatus, Set[ContractStatus]] = {
    ContractStatus.NOT_FUNDED: {ContractStatus.PARTIALLY_FUNDED, ContractStatus.FULLY_FUNDED},
    ContractStatus.PARTIALLY_FUNDED: {ContractStatus.FULLY_FUNDED},
    ContractStatus.FULLY_FUNDED: {ContractStatus.FUNDS_TRANSFERRED_TO_PROVIDER},
    ContractStatus.FUNDS_TRANSFERRED_TO_PROVIDER: {ContractStatus.FUNDS_REPAID},
    ContractStatus.FUNDS_REPAID: {ContractStatus.FUNDS_DISBURSED},
    ContractStatus.FUNDS_DISBURSED: set(),
}


def check_status_transition(contract: Contract, requested: ContractStatus) -> None:
    """
    Enforce the one-way contract lifecycle.

    NOT_FUNDED → PARTIALLY_FUNDED → FULLY_FUNDED → FUNDS_TRANSFERRED_TO_PROVIDER
    → FUNDS_REPAID → FUNDS_DISBURSED, with NOT_FUNDED → FULLY_FUNDED allowed.
    Re-asserting the current status is a no-op.
    """
    if requested == contract.status:
        return
    if requested not in _ALLOWED_TRANSITIONS.get(contract.status, set()):
        raise InvalidStatusTransition("Contract", contract.id, contract.status, requested)
