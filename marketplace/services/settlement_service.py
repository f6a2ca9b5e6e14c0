"""
Settlement service: the money movements behind each Contract stage.

- ``invest``: investor → contract wallet.  A Funding is added and the
  contract becomes PARTIALLY_FUNDED or FULLY_FUNDED.
- ``transfer_to_provider``: contract wallet → provider.  The contract
  becomes FUNDS_TRANSFERRED_TO_PROVIDER and its RFF is closed.
- ``repay``: requester → contract wallet.  The contract becomes
  FUNDS_REPAID and its RFF REPAID.
- ``disburse``: contract wallet → every investor.  Contract, fundings and
  RFF all become FUNDS_DISBURSED.

Every stage runs under the contract's :class:`KeyedLock` and row lock inside
one :func:`unit_of_work`.  Preconditions (status, known wallets, sufficient
balance) are all checked before the ledger moves, and the ledger refuses an
overdraft under its own wallet locks.  Log entries are staged in the same
transaction as the state change; if the commit fails the ledger movement is
reverted.
"""

import logging
from typing import Callable, List, Mapping, Sequence

from marketplace.core.exceptions import (
    ContractException,
    DisburseContractException,
    InsufficientFunds,
    InvalidBalance,
    InvalidStatusTransition,
    NotFoundException,
)
from marketplace.core.ledger import TransferReceipt
from marketplace.core.locks import KeyedLock, entity_locks
from marketplace.core.resilience import retry_with_backoff
from marketplace.db.session import unit_of_work
from marketplace.models.contract import Contract, ContractStatus
from marketplace.models.funding import Funding
from marketplace.models.request import Request, RequestStatus
from marketplace.models.transaction import TransactionType
from marketplace.repositories.contract_repo import ContractRepository
from marketplace.repositories.request_repo import RequestRepository
from marketplace.services import contract_service, request_service
from marketplace.services.ledger_service import Leg, LedgerService

logger = logging.getLogger(__name__)


class SettlementService:
    """Orchestrates ledger movements and contract state for each settlement stage."""

    def __init__(
        self,
        contract_repo: ContractRepository,
        request_repo: RequestRepository,
        ledger_service: LedgerService,
        locks: KeyedLock = entity_locks,
    ):
        self._contracts = contract_repo
        self._requests = request_repo
        self._ledger = ledger_service
        self._locks = locks

    @retry_with_backoff()
    async def invest(
        self, contract_id: int, profile_id: int, investor_wallet: str, amount: int
    ) -> Funding:
        """
        Fund a contract from an investor's wallet.

        Raises :class:`InvalidBalance` for an unknown wallet,
        :class:`InsufficientFunds` if the investor cannot cover ``amount`` and
        :class:`FundingAmountException` if ``amount`` exceeds the outstanding
        amount.  On success the Funding exists and the money sits in the
        contract wallet.
        """
        receipts: List[TransferReceipt] = []
        async with self._locks.acquire(("contract", contract_id)):
            try:
                async with unit_of_work(self._contracts.db):
                    contract = await self._get_for_update(contract_id)
                    self._require_funds(investor_wallet, amount)
                    self._require_wallet(contract.wallet_id)
                    funding = contract.fund(profile_id, amount)
                    receipts, _ = await self._ledger.move(
                        [(investor_wallet, contract.wallet_id, amount)],
                        TransactionType.FUNDING,
                        allow_overdraft=False,
                    )
            except Exception:
                self._ledger.revert(receipts)
                raise

        logger.info(
            "Investor %s put %d into contract %s from %s; status %s",
            profile_id,
            amount,
            contract_id,
            investor_wallet,
            contract.status.value,
            extra={
                "entity": "Contract",
                "entity_id": contract_id,
                "wallet_id": investor_wallet,
                "amount": amount,
                "status": contract.status.value,
            },
        )
        return funding

    @retry_with_backoff()
    async def transfer_to_provider(self, contract_id: int, provider_wallet: str) -> Contract:
        """
        Pay the raised ``target_amount`` out to the solution provider.

        Requires FULLY_FUNDED.  The contract moves to
        FUNDS_TRANSFERRED_TO_PROVIDER and its RFF is closed.
        """
        return await self._settle(
            contract_id,
            required=ContractStatus.FULLY_FUNDED,
            next_status=ContractStatus.FUNDS_TRANSFERRED_TO_PROVIDER,
            rff_status=RequestStatus.CLOSED,
            legs=lambda c: [(c.wallet_id, provider_wallet, c.target_amount)],
            type=TransactionType.PROVIDER_PAYOUT,
        )

    @retry_with_backoff()
    async def repay(self, contract_id: int, payer_wallet: str) -> Contract:
        """
        Pay ``repayment_amount`` back into the contract wallet.

        Requires FUNDS_TRANSFERRED_TO_PROVIDER and a payer balance of at least
        the repayment.  The contract moves to FUNDS_REPAID and its RFF to
        REPAID.
        """
        return await self._settle(
            contract_id,
            required=ContractStatus.FUNDS_TRANSFERRED_TO_PROVIDER,
            next_status=ContractStatus.FUNDS_REPAID,
            rff_status=RequestStatus.REPAID,
            legs=lambda c: [(payer_wallet, c.wallet_id, c.repayment_amount)],
            type=TransactionType.REPAYMENT,
        )

    @retry_with_backoff()
    async def disburse(self, contract_id: int, wallets_by_profile: Mapping[int, str]) -> Contract:
        """
        Pay every investor their funding's ``repayment_amount``.

        Requires FUNDS_REPAID.  ``wallets_by_profile`` maps each investor
        profile to the wallet it is paid into; a missing investor raises
        :class:`InvalidBalance`, and payouts adding up to more than the
        contract's ``repayment_amount`` raise :class:`ContractException`, so
        a shared wallet never pays out another contract's money.  All
        payouts are one ledger batch; the contract, its fundings and its RFF
        move to FUNDS_DISBURSED.
        """

        def payouts(contract: Contract) -> List[Leg]:
            legs = []
            for funding in contract.fundings:
                wallet = wallets_by_profile.get(funding.profile_id)
                if wallet is None:
                    raise InvalidBalance(f"profile:{funding.profile_id}")
                legs.append((contract.wallet_id, wallet, funding.repayment_amount))
            owed = sum(amount for _, _, amount in legs)
            if owed > contract.repayment_amount:
                raise ContractException(
                    f"Contract {contract.id} owes its investors {owed}, "
                    f"more than its repayment of {contract.repayment_amount}",
                    details={
                        "id": contract.id,
                        "owed": owed,
                        "repayment_amount": contract.repayment_amount,
                    },
                )
            return legs

        return await self._settle(
            contract_id,
            required=ContractStatus.FUNDS_REPAID,
            next_status=ContractStatus.FUNDS_DISBURSED,
            rff_status=RequestStatus.FUNDS_DISBURSED,
            legs=payouts,
            type=TransactionType.DISBURSEMENT,
        )

    # ── Internal helpers ──

    async def _settle(
        self,
        contract_id: int,
        required: ContractStatus,
        next_status: ContractStatus,
        rff_status: RequestStatus,
        legs: Callable[[Contract], List[Leg]],
        type: TransactionType,
    ) -> Contract:
        receipts: List[TransferReceipt] = []
        async with self._locks.acquire(("contract", contract_id)):
            try:
                async with unit_of_work(self._contracts.db):
                    contract = await self._get_for_update(contract_id)
                    if contract.status != required:
                        if next_status == ContractStatus.FUNDS_DISBURSED:
                            raise DisburseContractException(contract_id, contract.status)
                        raise InvalidStatusTransition(
                            "Contract", contract_id, contract.status, next_status
                        )
                    rff = await self._get_rff_for_update(contract)
                    request_service.check_status_transition(rff, rff_status)

                    movement = legs(contract)
                    self._require_legs(movement)
                    receipts, _ = await self._ledger.move(movement, type, allow_overdraft=False)

                    if next_status == ContractStatus.FUNDS_DISBURSED:
                        contract_service.disburse(contract)
                    else:
                        contract.status = next_status
                    rff.status = rff_status
            except Exception:
                self._ledger.revert(receipts)
                raise

        logger.info(
            "Contract %s settled %s → %s (%d movements)",
            contract_id,
            required.value,
            next_status.value,
            len(receipts),
            extra={"entity": "Contract", "entity_id": contract_id, "status": next_status.value},
        )
        return contract

    async def _get_for_update(self, contract_id: int) -> Contract:
        contract = await self._contracts.get_for_update(contract_id)
        if not contract:
            raise NotFoundException("Contract", contract_id)
        return contract

    async def _get_rff_for_update(self, contract: Contract) -> Request:
        rff = await self._requests.get_for_update(contract.request_id)
        if not rff:
            raise NotFoundException("Request", contract.request_id)
        return rff

    def _require_wallet(self, wallet_id: str) -> int:
        balance = self._ledger.get_balance(wallet_id)
        if balance is None:
            raise InvalidBalance(wallet_id)
        return balance

    def _require_funds(self, wallet_id: str, amount: int) -> None:
        balance = self._require_wallet(wallet_id)
        if balance < amount:
            logger.warning(
                "Wallet %s cannot cover %d (balance %d)",
                wallet_id,
                amount,
                balance,
                extra={"wallet_id": wallet_id, "amount": amount},
            )
            raise InsufficientFunds(wallet_id, balance, amount)

    def _require_legs(self, legs: Sequence[Leg]) -> None:
        """Check every wallet is known and every payer can cover its total."""
        owed = {}
        for from_wallet, to_wallet, amount in legs:
            self._require_wallet(to_wallet)
            owed[from_wallet] = owed.get(from_wallet, 0) + amount
        for wallet_id, amount in owed.items():
            self._require_funds(wallet_id, amount)
