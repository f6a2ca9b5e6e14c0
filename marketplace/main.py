"""
Marketplace funding core: composition root.

:class:`MarketplaceCore` owns the process-wide pieces (the async engine and
session factory, the in-memory :class:`Ledger` seeded from configuration)
and builds the service set for a session::

    core = MarketplaceCore()
    await core.startup()
    async with core.session() as session:
        svc = core.services(session)
        rejected = await svc.requests.accept_proposal(11)
    await core.shutdown()

A FastAPI host wires the same object into its lifespan and calls
:func:`marketplace.core.exceptions.add_exception_handlers` on its app; the
core itself defines no routes.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

from marketplace.core.config import Settings, settings
from marketplace.core.ledger import Ledger
from marketplace.core.locks import KeyedLock, entity_locks
from marketplace.core.logging import setup_logging
from marketplace.core.resilience import retry_with_backoff
from marketplace.db.session import build_engine, build_session_factory
from marketplace.models.contract import Contract
from marketplace.models.funding import Funding
from marketplace.models.request import Request
from marketplace.models.transaction import Transaction
from marketplace.repositories.contract_repo import ContractRepository
from marketplace.repositories.funding_repo import FundingRepository
from marketplace.repositories.request_repo import RequestRepository
from marketplace.repositories.transaction_repo import TransactionRepository
from marketplace.services.contract_service import ContractService
from marketplace.services.funding_service import FundingService
from marketplace.services.ledger_service import LedgerService
from marketplace.services.request_service import RequestService
from marketplace.services.settlement_service import SettlementService
from marketplace.services.transaction_log import TransactionLog

logger = logging.getLogger(__name__)


def _is_startup_error(exc: BaseException) -> bool:
    return isinstance(exc, (OperationalError, OSError))


@dataclass
class Services:
    """The service set bound to one session."""

    requests: RequestService
    contracts: ContractService
    fundings: FundingService
    transactions: TransactionLog
    ledger: LedgerService
    settlement: SettlementService


class MarketplaceCore:
    """Owns the engine, session factory and ledger; builds services per session."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        ledger: Optional[Ledger] = None,
        locks: KeyedLock = entity_locks,
    ):
        self.config = config or settings
        self.engine = build_engine(self.config)
        self.session_factory = build_session_factory(self.engine)
        self.ledger = ledger if ledger is not None else Ledger(self.config.ledger_seed)
        self.locks = locks

    # ── Lifecycle ──

    async def startup(self) -> None:
        """Configure logging and create the tables, retrying while the database comes up."""
        setup_logging(self.config)
        try:
            await self._create_tables()
        except Exception as exc:
            logger.error("Could not create database tables: %s", exc)
            raise
        logger.info("%s ready", self.config.PROJECT_NAME)

    @retry_with_backoff(max_retries=5, base_delay=2.0, retry_if=_is_startup_error)
    async def _create_tables(self) -> None:
        import marketplace.db.base  # noqa: F401

        logger.info("Creating database tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def shutdown(self) -> None:
        logger.info("Shutting down; disposing connection pool")
        await self.engine.dispose()

    async def __aenter__(self) -> "MarketplaceCore":
        await self.startup()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # ── Sessions & services ──

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    def services(self, session: AsyncSession) -> Services:
        request_repo = RequestRepository(Request, session)
        contract_repo = ContractRepository(Contract, session)
        transaction_log = TransactionLog(TransactionRepository(Transaction, session))
        ledger_service = LedgerService(self.ledger, transaction_log)
        return Services(
            requests=RequestService(request_repo, contract_repo, self.locks),
            contracts=ContractService(contract_repo, request_repo, self.locks),
            fundings=FundingService(FundingRepository(Funding, session), contract_repo),
            transactions=transaction_log,
            ledger=ledger_service,
            settlement=SettlementService(contract_repo, request_repo, ledger_service, self.locks),
        )
