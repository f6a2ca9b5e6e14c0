"""
Unit tests for ContractService and FundingService.

Uses mocked repositories to test the business rules in isolation:
- Contract creation from a Request-for-Funding
- Lookup by request id
- Funding under the outstanding-amount rule
- Disbursement and the forward-only lifecycle
"""

from unittest.mock import AsyncMock

import pytest
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
from marketplace.core.locks import KeyedLock
from marketplace.models.contract import ContractStatus
from marketplace.models.funding import FundingStatus
from marketplace.models.request import RequestType
from marketplace.schemas.contract import ContractCreate
from marketplace.services.contract_service import ContractService, check_status_transition
from marketplace.services.funding_service import FundingService

from .conftest import (
    CONTRACT_ID,
    ESCROW_WALLET,
    INVESTOR_ID,
    INVESTOR_ID_2,
    PROPOSAL_ID,
    RFF_ID,
    make_contract,
    make_funding,
    make_request,
)


@pytest.fixture()
def contract_repo(mock_db):
    repo = AsyncMock()
    repo.db = mock_db
    return repo


@pytest.fixture()
def request_repo(mock_db):
    repo = AsyncMock()
    repo.db = mock_db
    return repo


@pytest.fixture()
def service(contract_repo, request_repo):
    return ContractService(contract_repo, request_repo, KeyedLock())


def _rff():
    return make_request(
        id=RFF_ID, type=RequestType.RFF, request_id=PROPOSAL_ID, repayment=1_200_000
    )


def _contract_in(**overrides):
    body = dict(
        request_id=RFF_ID,
        wallet_id=ESCROW_WALLET,
        target_amount=1_000_000,
        repayment_amount=1_200_000,
    )
    body.update(overrides)
    return ContractCreate(**body)


# ────────────────────────────────────────────────────────────────────────────
# create_contract
# ────────────────────────────────────────────────────────────────────────────


class TestCreateContract:
    @pytest.mark.asyncio
    async def test_create(self, service, contract_repo, request_repo):
        request_repo.get.return_value = _rff()
        contract_repo.get_by_request_id.return_value = None

        async def insert(contract):
            contract.id = CONTRACT_ID
            return contract

        contract_repo.create.side_effect = insert
        contract_repo.get.return_value = make_contract()

        contract = await service.create_contract(_contract_in())

        created = contract_repo.create.await_args.args[0]
        assert created.status == ContractStatus.NOT_FUNDED
        assert created.wallet_id == ESCROW_WALLET
        assert contract.id == CONTRACT_ID
        contract_repo.get.assert_awaited_once_with(CONTRACT_ID)

    @pytest.mark.asyncio
    async def test_request_not_found(self, service, request_repo):
        request_repo.get.return_value = None
        with pytest.raises(NotFoundException):
            await service.create_contract(_contract_in())

    @pytest.mark.asyncio
    async def test_request_must_be_rff(self, service, request_repo):
        request_repo.get.return_value = make_request(id=RFF_ID)
        with pytest.raises(InvalidRequestType):
            await service.create_contract(_contract_in())

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, service, contract_repo, request_repo):
        request_repo.get.return_value = _rff()
        contract_repo.get_by_request_id.return_value = make_contract()
        with pytest.raises(ConflictException):
            await service.create_contract(_contract_in())
        contract_repo.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_insert_race_is_conflict(
        self, service, contract_repo, request_repo, mock_db
    ):
        request_repo.get.return_value = _rff()
        contract_repo.get_by_request_id.return_value = None
        contract_repo.create.side_effect = IntegrityError("INSERT", {}, Exception("unique"))
        with pytest.raises(ConflictException):
            await service.create_contract(_contract_in())
        mock_db.rollback.assert_awaited_once()


# ────────────────────────────────────────────────────────────────────────────
# Queries
# ────────────────────────────────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_contract_not_found(self, service, contract_repo):
        contract_repo.get.return_value = None
        with pytest.raises(NotFoundException):
            await service.get_contract(999)

    @pytest.mark.asyncio
    async def test_get_by_request_id(self, service, contract_repo):
        contract_repo.get_by_request_id.return_value = make_contract()
        contract = await service.get_contract_by_request_id(RFF_ID)
        assert contract.request_id == RFF_ID

    @pytest.mark.asyncio
    async def test_get_by_request_id_missing(self, service, contract_repo):
        contract_repo.get_by_request_id.return_value = None
        with pytest.raises(RequestIdNotFound) as exc_info:
            await service.get_contract_by_request_id(RFF_ID)
        assert exc_info.value.status_code == 404


# ────────────────────────────────────────────────────────────────────────────
# fund_contract
# ────────────────────────────────────────────────────────────────────────────


class TestFundContract:
    @pytest.mark.asyncio
    async def test_partial_funding(self, service, contract_repo, mock_db):
        contract = make_contract()
        contract_repo.get_for_update.return_value = contract

        funding = await service.fund_contract(CONTRACT_ID, INVESTOR_ID, 250_000)

        assert funding.funding_amount == 250_000
        assert funding.repayment_amount == 300_000
        assert contract.status == ContractStatus.PARTIALLY_FUNDED
        mock_db.flush.assert_awaited()
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_overfunding_rejected(self, service, contract_repo, mock_db):
        contract = make_contract(fundings=[make_funding(funding_amount=900_000)])
        contract_repo.get_for_update.return_value = contract

        with pytest.raises(FundingAmountException):
            await service.fund_contract(CONTRACT_ID, INVESTOR_ID_2, 200_000)

        assert len(contract.fundings) == 1
        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_contract_not_found(self, service, contract_repo):
        contract_repo.get_for_update.return_value = None
        with pytest.raises(NotFoundException):
            await service.fund_contract(999, INVESTOR_ID, 1)


# ────────────────────────────────────────────────────────────────────────────
# Disbursement & status
# ────────────────────────────────────────────────────────────────────────────


class TestDisburse:
    @pytest.mark.asyncio
    async def test_disburse_repaid_contract(self, service, contract_repo):
        contract = make_contract(
            status=ContractStatus.FUNDS_REPAID,
            fundings=[make_funding(id=1), make_funding(id=2, profile_id=INVESTOR_ID_2)],
        )
        contract_repo.get_for_update.return_value = contract

        await service.disburse_contract(CONTRACT_ID)

        assert contract.status == ContractStatus.FUNDS_DISBURSED
        assert all(f.status == FundingStatus.FUNDS_DISBURSED for f in contract.fundings)

    @pytest.mark.asyncio
    async def test_disburse_requires_repaid(self, service, contract_repo):
        contract_repo.get_for_update.return_value = make_contract(
            status=ContractStatus.FULLY_FUNDED
        )
        with pytest.raises(DisburseContractException):
            await service.disburse_contract(CONTRACT_ID)

    @pytest.mark.asyncio
    async def test_status_update_to_disbursed_disburses_fundings(self, service, contract_repo):
        contract = make_contract(status=ContractStatus.FUNDS_REPAID, fundings=[make_funding()])
        contract_repo.get_for_update.return_value = contract

        await service.update_contract_status(CONTRACT_ID, ContractStatus.FUNDS_DISBURSED)

        assert contract.fundings[0].disbursed_amount == 600_000

    @pytest.mark.asyncio
    async def test_status_update_backwards_rejected(self, service, contract_repo, mock_db):
        contract_repo.get_for_update.return_value = make_contract(
            status=ContractStatus.FULLY_FUNDED
        )
        with pytest.raises(InvalidStatusTransition):
            await service.update_contract_status(CONTRACT_ID, ContractStatus.NOT_FUNDED)
        mock_db.commit.assert_not_awaited()


class TestContractTransitions:
    @pytest.mark.parametrize(
        "current,requested",
        [
            (ContractStatus.NOT_FUNDED, ContractStatus.PARTIALLY_FUNDED),
            (ContractStatus.NOT_FUNDED, ContractStatus.FULLY_FUNDED),
            (ContractStatus.FULLY_FUNDED, ContractStatus.FUNDS_TRANSFERRED_TO_PROVIDER),
            (ContractStatus.FUNDS_REPAID, ContractStatus.FUNDS_DISBURSED),
            (ContractStatus.FUNDS_REPAID, ContractStatus.FUNDS_REPAID),
        ],
    )
    def test_allowed(self, current, requested):
        check_status_transition(make_contract(status=current), requested)

    @pytest.mark.parametrize(
        "current,requested",
        [
            (ContractStatus.PARTIALLY_FUNDED, ContractStatus.NOT_FUNDED),
            (ContractStatus.FULLY_FUNDED, ContractStatus.FUNDS_REPAID),
            (ContractStatus.FUNDS_DISBURSED, ContractStatus.FUNDS_REPAID),
        ],
    )
    def test_rejected(self, current, requested):
        with pytest.raises(InvalidStatusTransition):
            check_status_transition(make_contract(status=current), requested)


# ────────────────────────────────────────────────────────────────────────────
# FundingService
# ────────────────────────────────────────────────────────────────────────────


class TestFundingService:
    @pytest.fixture()
    def funding_repo(self):
        return AsyncMock()

    @pytest.mark.asyncio
    async def test_fundings_of_missing_contract(self, funding_repo, contract_repo):
        contract_repo.get.return_value = None
        with pytest.raises(NotFoundException):
            await FundingService(funding_repo, contract_repo).get_fundings_by_contract_id(999)
        funding_repo.get_by_contract_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fundings_of_contract(self, funding_repo, contract_repo):
        contract_repo.get.return_value = make_contract()
        funding_repo.get_by_contract_id.return_value = [make_funding()]
        fundings = await FundingService(funding_repo, contract_repo).get_fundings_by_contract_id(
            CONTRACT_ID
        )
        assert [f.profile_id for f in fundings] == [INVESTOR_ID]

    @pytest.mark.asyncio
    async def test_funding_not_found(self, funding_repo, contract_repo):
        funding_repo.get.return_value = None
        with pytest.raises(NotFoundException):
            await FundingService(funding_repo, contract_repo).get_funding(1)
