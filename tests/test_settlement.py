"""
Integration tests for money movement: LedgerService and SettlementService.

Follows one contract from funding to disbursement and checks ledger
balances, contract / RFF / funding statuses and the transaction log at
every stage, plus the failure paths that must leave balances untouched.
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.exceptions import (
    ContractException,
    DisburseContractException,
    FundingAmountException,
    InsufficientFunds,
    InvalidAmount,
    InvalidBalance,
    InvalidStatusTransition,
)
from marketplace.models.contract import Contract, ContractStatus
from marketplace.models.funding import FundingStatus
from marketplace.models.request import RequestStatus, RequestType
from marketplace.models.transaction import TransactionType

from .conftest import (
    CONTRACT_ID,
    ESCROW_WALLET,
    INVESTOR_ID,
    INVESTOR_ID_2,
    INVESTOR_WALLET,
    INVESTOR_WALLET_2,
    PROPOSAL_ID,
    PROVIDER_WALLET,
    REQUESTER_WALLET,
    RFF_ID,
    make_contract,
    make_funding,
    make_request,
    seed_rfp_with_proposals,
)

WALLETS_BY_PROFILE = {INVESTOR_ID: INVESTOR_WALLET, INVESTOR_ID_2: INVESTOR_WALLET_2}


async def _open_contract(session, services):
    await seed_rfp_with_proposals(session)
    await services.requests.accept_proposal(PROPOSAL_ID)
    return await services.requests.request_funding(PROPOSAL_ID, 1_200_000, ESCROW_WALLET)


async def _funded_contract(session, services):
    contract = await _open_contract(session, services)
    await services.settlement.invest(contract.id, INVESTOR_ID, INVESTOR_WALLET, 600_000)
    await services.settlement.invest(contract.id, INVESTOR_ID_2, INVESTOR_WALLET_2, 400_000)
    return contract


# ────────────────────────────────────────────────────────────────────────────
# LedgerService
# ────────────────────────────────────────────────────────────────────────────


class TestLedgerService:
    @pytest.mark.asyncio
    async def test_transfer_records_entry(self, services):
        entry = await services.ledger.transfer("W1", "W2", 200)

        assert entry.type == TransactionType.TRANSFER
        assert (entry.sender_amount, entry.sender_balance) == (-200, 800)
        assert (entry.receiver_amount, entry.receiver_balance) == (200, 700)
        assert services.ledger.get_balance("W1") == 800

        logged = await services.transactions.get_transactions("W1")
        assert [t.id for t in logged] == [entry.id]
        assert await services.transactions.verify(entry.id)

    @pytest.mark.asyncio
    async def test_invalid_transfer_moves_nothing(self, services):
        with pytest.raises(InvalidAmount):
            await services.ledger.transfer("W1", "W2", 0)
        with pytest.raises(InvalidBalance):
            await services.ledger.transfer("W1", "W3", 10)
        assert services.ledger.get_balance("W1") == 1000
        assert await services.transactions.get_transactions() == []

    @pytest.mark.asyncio
    async def test_failed_commit_reverts_ledger(self, services, monkeypatch):
        failing_commit = AsyncMock(side_effect=RuntimeError("disk full"))
        monkeypatch.setattr(AsyncSession, "commit", failing_commit)

        with pytest.raises(RuntimeError):
            await services.ledger.transfer("W1", "W2", 200)

        assert services.ledger.get_balance("W1") == 1000
        assert services.ledger.get_balance("W2") == 500


# ────────────────────────────────────────────────────────────────────────────
# Full settlement flow
# ────────────────────────────────────────────────────────────────────────────


class TestSettlementFlow:
    @pytest.mark.asyncio
    async def test_fund_pay_repay_disburse(self, session, services):
        ledger = services.ledger

        # ── Investment ──
        contract = await _open_contract(session, services)
        first = await services.settlement.invest(
            contract.id, INVESTOR_ID, INVESTOR_WALLET, 600_000
        )
        assert first.repayment_amount == 720_000
        assert (await services.contracts.get_contract(contract.id)).status == (
            ContractStatus.PARTIALLY_FUNDED
        )

        await services.settlement.invest(contract.id, INVESTOR_ID_2, INVESTOR_WALLET_2, 400_000)
        assert (await services.contracts.get_contract(contract.id)).status == (
            ContractStatus.FULLY_FUNDED
        )
        assert ledger.get_balance(ESCROW_WALLET) == 1_000_000
        assert ledger.get_balance(INVESTOR_WALLET) == 400_000
        assert ledger.get_balance(INVESTOR_WALLET_2) == 600_000

        # ── Payout to provider ──
        paid = await services.settlement.transfer_to_provider(contract.id, PROVIDER_WALLET)
        assert paid.status == ContractStatus.FUNDS_TRANSFERRED_TO_PROVIDER
        assert ledger.get_balance(PROVIDER_WALLET) == 1_000_000
        assert ledger.get_balance(ESCROW_WALLET) == 0
        rff = await services.requests.get_request(contract.request_id)
        assert rff.status == RequestStatus.CLOSED

        # ── Repayment ──
        repaid = await services.settlement.repay(contract.id, REQUESTER_WALLET)
        assert repaid.status == ContractStatus.FUNDS_REPAID
        assert ledger.get_balance(REQUESTER_WALLET) == 800_000
        assert ledger.get_balance(ESCROW_WALLET) == 1_200_000
        rff = await services.requests.get_request(contract.request_id)
        assert rff.status == RequestStatus.REPAID

        # ── Disbursement ──
        done = await services.settlement.disburse(contract.id, WALLETS_BY_PROFILE)
        assert done.status == ContractStatus.FUNDS_DISBURSED
        assert ledger.get_balance(INVESTOR_WALLET) == 1_120_000
        assert ledger.get_balance(INVESTOR_WALLET_2) == 1_080_000
        assert ledger.get_balance(ESCROW_WALLET) == 0
        rff = await services.requests.get_request(contract.request_id)
        assert rff.status == RequestStatus.FUNDS_DISBURSED

        fundings = await services.fundings.get_fundings_by_contract_id(contract.id)
        assert [f.status for f in fundings] == [FundingStatus.FUNDS_DISBURSED] * 2
        assert [f.disbursed_amount for f in fundings] == [720_000, 480_000]

        # ── Transaction log ──
        entries = await services.transactions.get_transactions()
        assert sorted(e.type.value for e in entries) == ["D", "D", "F", "F", "P", "R"]
        for entry in entries:
            assert await services.transactions.verify(entry.id)

        investor_entries = await services.transactions.get_transactions(INVESTOR_WALLET)
        assert [e.type for e in investor_entries] == [
            TransactionType.DISBURSEMENT,
            TransactionType.FUNDING,
        ]
        assert investor_entries[0].receiver_balance == 1_120_000

    @pytest.mark.asyncio
    async def test_money_is_conserved(self, session, services):
        before = sum(services.ledger.get_entries().values())
        contract = await _funded_contract(session, services)
        await services.settlement.transfer_to_provider(contract.id, PROVIDER_WALLET)
        await services.settlement.repay(contract.id, REQUESTER_WALLET)
        await services.settlement.disburse(contract.id, WALLETS_BY_PROFILE)
        assert sum(services.ledger.get_entries().values()) == before


# ────────────────────────────────────────────────────────────────────────────
# Failure paths
# ────────────────────────────────────────────────────────────────────────────


class TestSettlementFailures:
    @pytest.mark.asyncio
    async def test_invest_beyond_balance(self, session, services):
        contract = await _open_contract(session, services)

        with pytest.raises(InsufficientFunds):
            await services.settlement.invest(contract.id, INVESTOR_ID, "W2", 600)

        assert services.ledger.get_balance("W2") == 500
        assert services.ledger.get_balance(ESCROW_WALLET) == 0
        refreshed = await services.contracts.get_contract(contract.id)
        assert refreshed.status == ContractStatus.NOT_FUNDED
        assert refreshed.fundings == []
        assert await services.transactions.get_transactions() == []

    @pytest.mark.asyncio
    async def test_invest_beyond_outstanding(self, session, services):
        contract = await _funded_contract(session, services)

        with pytest.raises(FundingAmountException):
            await services.settlement.invest(contract.id, INVESTOR_ID, INVESTOR_WALLET, 1)

        assert services.ledger.get_balance(INVESTOR_WALLET) == 400_000
        assert services.ledger.get_balance(ESCROW_WALLET) == 1_000_000

    @pytest.mark.asyncio
    async def test_invest_from_unknown_wallet(self, session, services):
        contract = await _open_contract(session, services)
        with pytest.raises(InvalidBalance):
            await services.settlement.invest(contract.id, INVESTOR_ID, "UnknownWallet01", 10)

    @pytest.mark.asyncio
    async def test_payout_requires_fully_funded(self, session, services):
        contract = await _open_contract(session, services)
        with pytest.raises(InvalidStatusTransition):
            await services.settlement.transfer_to_provider(contract.id, PROVIDER_WALLET)
        assert services.ledger.get_balance(PROVIDER_WALLET) == 0

    @pytest.mark.asyncio
    async def test_repay_beyond_balance(self, session, services):
        contract = await _funded_contract(session, services)
        await services.settlement.transfer_to_provider(contract.id, PROVIDER_WALLET)

        # The provider holds 1,000,000 but the repayment is 1,200,000.
        with pytest.raises(InsufficientFunds):
            await services.settlement.repay(contract.id, PROVIDER_WALLET)

        assert services.ledger.get_balance(PROVIDER_WALLET) == 1_000_000
        refreshed = await services.contracts.get_contract(contract.id)
        assert refreshed.status == ContractStatus.FUNDS_TRANSFERRED_TO_PROVIDER

    @pytest.mark.asyncio
    async def test_disburse_before_repayment(self, session, services):
        contract = await _funded_contract(session, services)
        with pytest.raises(DisburseContractException):
            await services.settlement.disburse(contract.id, WALLETS_BY_PROFILE)
        assert services.ledger.get_balance(ESCROW_WALLET) == 1_000_000

    @pytest.mark.asyncio
    async def test_disburse_with_missing_investor_wallet(self, session, services):
        contract = await _funded_contract(session, services)
        await services.settlement.transfer_to_provider(contract.id, PROVIDER_WALLET)
        await services.settlement.repay(contract.id, REQUESTER_WALLET)

        with pytest.raises(InvalidBalance):
            await services.settlement.disburse(contract.id, {INVESTOR_ID: INVESTOR_WALLET})

        assert services.ledger.get_balance(ESCROW_WALLET) == 1_200_000
        refreshed = await services.contracts.get_contract(contract.id)
        assert refreshed.status == ContractStatus.FUNDS_REPAID


# ────────────────────────────────────────────────────────────────────────────
# Contracts sharing one escrow wallet
# ────────────────────────────────────────────────────────────────────────────


async def _small_contract(session, contract_id, rff_id, target, repayment):
    session.add(
        make_request(id=rff_id, type=RequestType.RFF, cost=target, repayment=repayment)
    )
    contract = Contract.create(rff_id, ESCROW_WALLET, target, repayment)
    contract.id = contract_id
    session.add(contract)
    await session.commit()
    return contract


class TestSharedEscrow:
    @pytest.mark.asyncio
    async def test_disburse_pays_out_only_the_repayment(self, session, services):
        ledger = services.ledger
        other = await _small_contract(session, CONTRACT_ID + 1, RFF_ID + 1, 3, 4)
        await services.settlement.invest(other.id, INVESTOR_ID, INVESTOR_WALLET, 3)

        contract = await _small_contract(session, CONTRACT_ID, RFF_ID, 3, 5)
        investors = {INVESTOR_ID: INVESTOR_WALLET, INVESTOR_ID_2: INVESTOR_WALLET_2, 103: "W1"}
        for profile_id, wallet in investors.items():
            await services.settlement.invest(contract.id, profile_id, wallet, 1)
        await services.settlement.transfer_to_provider(contract.id, PROVIDER_WALLET)
        await services.settlement.repay(contract.id, REQUESTER_WALLET)
        assert ledger.get_balance(ESCROW_WALLET) == 3 + 5

        await services.settlement.disburse(contract.id, investors)

        fundings = await services.fundings.get_fundings_by_contract_id(contract.id)
        assert [f.disbursed_amount for f in fundings] == [2, 2, 1]
        # The other contract's 3 are still in escrow.
        assert ledger.get_balance(ESCROW_WALLET) == 3

    @pytest.mark.asyncio
    async def test_disburse_refuses_payouts_above_repayment(self, session, services):
        session.add(
            make_request(
                id=RFF_ID,
                type=RequestType.RFF,
                status=RequestStatus.REPAID,
                cost=3,
                repayment=5,
            )
        )
        session.add(
            make_contract(
                target_amount=3,
                repayment_amount=5,
                status=ContractStatus.FUNDS_REPAID,
                fundings=[
                    make_funding(id=1, funding_amount=2, repayment_amount=3),
                    make_funding(
                        id=2, profile_id=INVESTOR_ID_2, funding_amount=1, repayment_amount=3
                    ),
                ],
            )
        )
        await session.commit()
        await services.ledger.transfer(REQUESTER_WALLET, ESCROW_WALLET, 10)

        with pytest.raises(ContractException):
            await services.settlement.disburse(CONTRACT_ID, WALLETS_BY_PROFILE)

        assert services.ledger.get_balance(ESCROW_WALLET) == 10
        refreshed = await services.contracts.get_contract(CONTRACT_ID)
        assert refreshed.status == ContractStatus.FUNDS_REPAID
