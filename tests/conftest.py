"""
Shared pytest fixtures.

Unit tests use mocked repositories; integration tests get a fresh
:class:`MarketplaceCore` bound to its own in-memory SQLite database and a
ledger seeded with the wallets below.  ``USE_SQLITE`` is forced before any
``marketplace`` import so module-level settings never ask for PostgreSQL.
"""

import os

os.environ.setdefault("USE_SQLITE", "true")

from datetime import datetime, timezone  # noqa: E402
from typing import List, Optional  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from marketplace.core.config import Settings  # noqa: E402
from marketplace.core.locks import KeyedLock  # noqa: E402
from marketplace.main import MarketplaceCore  # noqa: E402
from marketplace.models.contract import Contract, ContractStatus  # noqa: E402
from marketplace.models.funding import Funding, FundingStatus  # noqa: E402
from marketplace.models.request import Request, RequestStatus, RequestType  # noqa: E402

# ────────────────────────────────────────────────────────────────────────────
# Factory helpers: create domain objects with sensible defaults
# ────────────────────────────────────────────────────────────────────────────

REQUESTER_ID = 1
PROVIDER_ID = 2
PROVIDER_ID_2 = 3
INVESTOR_ID = 101
INVESTOR_ID_2 = 102

RFP_ID = 10
PROPOSAL_ID = 11
PROPOSAL_ID_2 = 12
RFF_ID = 20
CONTRACT_ID = 30

ESCROW_WALLET = "MarketplaceEscrowWallet0001"
INVESTOR_WALLET = "InvestorWalletA001"
INVESTOR_WALLET_2 = "InvestorWalletB001"
PROVIDER_WALLET = "ProviderWallet0001"
REQUESTER_WALLET = "RequesterWallet001"

SEED_BALANCES = {
    INVESTOR_WALLET: 1_000_000,
    INVESTOR_WALLET_2: 1_000_000,
    PROVIDER_WALLET: 0,
    REQUESTER_WALLET: 2_000_000,
    "W1": 1000,
    "W2": 500,
}


def make_request(
    *,
    id: Optional[int] = RFP_ID,
    type: RequestType = RequestType.RFP,
    status: RequestStatus = RequestStatus.OPEN,
    request_id: Optional[int] = None,
    from_profile_id: int = REQUESTER_ID,
    to_profile_id: int = PROVIDER_ID,
    title: str = "Cold-chain tracking for vaccine shipments",
    cost: int = 1_000_000,
    repayment: Optional[int] = None,
) -> Request:
    """Create a Request domain object with sensible test defaults."""
    return Request(
        id=id,
        from_profile_id=from_profile_id,
        to_profile_id=to_profile_id,
        request_id=request_id,
        title=title,
        type=type,
        status=status,
        description="Track temperature end to end",
        cost=cost,
        repayment=repayment,
        specifications="IoT sensors, 5-minute sampling",
        created_timestamp=datetime(2025, 6, 15, tzinfo=timezone.utc),
    )


def make_proposal(
    *, id: int = PROPOSAL_ID, rfp_id: Optional[int] = RFP_ID, **kwargs
) -> Request:
    kwargs.setdefault("from_profile_id", PROVIDER_ID)
    kwargs.setdefault("to_profile_id", REQUESTER_ID)
    return make_request(id=id, type=RequestType.PRO, request_id=rfp_id, **kwargs)


def make_contract(
    *,
    id: Optional[int] = CONTRACT_ID,
    request_id: int = RFF_ID,
    wallet_id: str = ESCROW_WALLET,
    target_amount: int = 1_000_000,
    repayment_amount: int = 1_200_000,
    status: ContractStatus = ContractStatus.NOT_FUNDED,
    fundings: Optional[List[Funding]] = None,
) -> Contract:
    """Create a Contract domain object with sensible test defaults."""
    return Contract(
        id=id,
        request_id=request_id,
        wallet_id=wallet_id,
        target_amount=target_amount,
        repayment_amount=repayment_amount,
        status=status,
        fundings=fundings or [],
    )


def make_funding(
    *,
    id: Optional[int] = 1,
    contract_id: int = CONTRACT_ID,
    profile_id: int = INVESTOR_ID,
    funding_amount: int = 500_000,
    repayment_amount: int = 600_000,
    status: FundingStatus = FundingStatus.FUNDS_IN_CONTRACT,
) -> Funding:
    return Funding(
        id=id,
        contract_id=contract_id,
        profile_id=profile_id,
        funding_amount=funding_amount,
        repayment_amount=repayment_amount,
        disbursed_amount=0,
        status=status,
    )


# ────────────────────────────────────────────────────────────────────────────
# Pytest fixtures
# ────────────────────────────────────────────────────────────────────────────


@pytest.fixture()
def mock_db():
    """A mocked AsyncSession that tracks add/commit/refresh/rollback calls."""
    session = AsyncMock()
    session.add = MagicMock()
    session.commit = AsyncMock()
    session.refresh = AsyncMock()
    session.rollback = AsyncMock()
    session.flush = AsyncMock()
    session.execute = AsyncMock()
    session.get = AsyncMock()
    session.merge = AsyncMock()
    session.delete = AsyncMock()
    return session


@pytest.fixture()
def sqlite_settings(tmp_path) -> Settings:
    return Settings(
        USE_SQLITE=True,
        LOG_DIR=str(tmp_path),
        LEDGER_SEED_BALANCES=SEED_BALANCES,
    )


@pytest_asyncio.fixture()
async def core(sqlite_settings):
    """A started core on a private in-memory database."""
    marketplace = MarketplaceCore(sqlite_settings, locks=KeyedLock())
    await marketplace.startup()
    yield marketplace
    await marketplace.shutdown()


@pytest_asyncio.fixture()
async def session(core):
    async with core.session() as db:
        yield db


@pytest.fixture()
def services(core, session):
    return core.services(session)


async def seed_rfp_with_proposals(session) -> None:
    """RFP #10 with two open proposals, #11 and #12, from different providers."""
    session.add(make_request(id=RFP_ID))
    session.add(make_proposal(id=PROPOSAL_ID))
    session.add(make_proposal(id=PROPOSAL_ID_2, from_profile_id=PROVIDER_ID_2))
    await session.commit()
