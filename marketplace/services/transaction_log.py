"""
Transaction log: the append-only record of every ledger movement.

Entries are sealed with a SHA-256 hash at creation (see
:class:`~marketplace.models.transaction.Transaction`) and never updated or
deleted.  :meth:`TransactionLog.record` stages the entry in the caller's
transaction rather than committing on its own, so a log entry is durable
exactly when the state change it describes is.
"""

import logging
from typing import List, Optional

from marketplace.core.exceptions import NotFoundException
from marketplace.core.ledger import TransferReceipt
from marketplace.models.transaction import Transaction, TransactionType
from marketplace.repositories.transaction_repo import TransactionRepository

logger = logging.getLogger(__name__)


class TransactionLog:
    """Append, list and verify :class:`Transaction` entries."""

    def __init__(self, transaction_repo: TransactionRepository):
        self._repo = transaction_repo

    @property
    def db(self):
        return self._repo.db

    # ── Queries ──

    async def get_transaction(self, transaction_id: int) -> Transaction:
        entry = await self._repo.get(transaction_id)
        if not entry:
            raise NotFoundException("Transaction", transaction_id)
        return entry

    async def get_transactions(self, wallet_id: Optional[str] = None) -> List[Transaction]:
        """All entries, or those ``wallet_id`` sent or received; newest first."""
        return await self._repo.get_by_wallet(wallet_id)

    async def verify(self, transaction_id: int) -> bool:
        """Recompute the entry's hash and report whether it still matches."""
        entry = await self.get_transaction(transaction_id)
        intact = entry.is_intact()
        if not intact:
            logger.warning(
                "Transaction %s failed hash verification",
                transaction_id,
                extra={"entity": "Transaction", "entity_id": transaction_id},
            )
        return intact

    # ── Commands ──

    async def record(
        self,
        type: TransactionType,
        sender_wallet_id: str,
        sender_amount: int,
        sender_balance: int,
        receiver_wallet_id: str,
        receiver_amount: int,
        receiver_balance: int,
    ) -> Transaction:
        """Append a sealed entry to the caller's open transaction."""
        entry = Transaction.record(
            type=type,
            sender_wallet_id=sender_wallet_id,
            sender_amount=sender_amount,
            sender_balance=sender_balance,
            receiver_wallet_id=receiver_wallet_id,
            receiver_amount=receiver_amount,
            receiver_balance=receiver_balance,
        )
        return await self._repo.add(entry)

    async def record_receipt(self, receipt: TransferReceipt, type: TransactionType) -> Transaction:
        """Log a ledger transfer: the sender leg negative, the receiver leg positive."""
        return await self.record(
            type=type,
            sender_wallet_id=receipt.from_wallet,
            sender_amount=-receipt.amount,
            sender_balance=receipt.from_balance,
            receiver_wallet_id=receipt.to_wallet,
            receiver_amount=receipt.amount,
            receiver_balance=receipt.to_balance,
        )
