"""
Ledger service: wallet transfers with a transaction-log entry per movement.

The :class:`~marketplace.core.ledger.Ledger` is in memory and the log is in
the database, so the two cannot share one commit.  The service keeps them in
step the other way round: the ledger moves first, the log entries are
staged in the same database transaction as the caller's state change, and
if that transaction fails the ledger movement is reversed with a
compensating batch.
"""

import logging
from typing import List, Mapping, Optional, Sequence, Tuple

from marketplace.core.ledger import Ledger, TransferReceipt
from marketplace.db.session import unit_of_work
from marketplace.models.transaction import Transaction, TransactionType
from marketplace.services.transaction_log import TransactionLog

logger = logging.getLogger(__name__)

Leg = Tuple[str, str, int]


class LedgerService:
    """Moves money between wallets and records every movement."""

    def __init__(self, ledger: Ledger, transaction_log: TransactionLog):
        self._ledger = ledger
        self._log = transaction_log

    # ── Queries ──

    def get_balance(self, wallet_id: str) -> Optional[int]:
        return self._ledger.get_balance(wallet_id)

    def get_entries(self) -> Mapping[str, int]:
        return self._ledger.get_entries()

    # ── Commands ──

    async def transfer(
        self,
        from_wallet: str,
        to_wallet: str,
        amount: int,
        type: TransactionType = TransactionType.TRANSFER,
    ) -> Transaction:
        """
        Move ``amount`` and commit its log entry.

        The entry carries the post-transfer balances of both wallets.
        """
        entries = await self.transfer_batch([(from_wallet, to_wallet, amount)], type)
        return entries[0]

    async def transfer_batch(
        self, legs: Sequence[Leg], type: TransactionType = TransactionType.TRANSFER
    ) -> List[Transaction]:
        """Apply every leg atomically and commit one log entry per leg."""
        receipts: List[TransferReceipt] = []
        try:
            async with unit_of_work(self._log.db):
                receipts, entries = await self.move(legs, type)
        except Exception:
            self.revert(receipts)
            raise
        return entries

    async def move(
        self, legs: Sequence[Leg], type: TransactionType, allow_overdraft: bool = True
    ) -> Tuple[List[TransferReceipt], List[Transaction]]:
        """
        Apply ``legs`` on the ledger and stage their log entries.

        Does not commit: the entries join the caller's open transaction.  If
        staging fails the ledger movement is reversed before re-raising.
        Callers that fail after this returns must pass the receipts to
        :meth:`revert`.
        """
        receipts = self._ledger.transfer_batch(legs, allow_overdraft=allow_overdraft)
        try:
            entries = [await self._log.record_receipt(r, type) for r in receipts]
        except Exception:
            self.revert(receipts)
            raise
        return receipts, entries

    def revert(self, receipts: Sequence[TransferReceipt]) -> None:
        """Undo ledger movements whose log entries were not committed."""
        if not receipts:
            return
        self._ledger.transfer_batch(
            [(r.to_wallet, r.from_wallet, r.amount) for r in reversed(receipts)]
        )
        logger.error(
            "Reverted %d ledger movements after a failed commit",
            len(receipts),
            extra={"wallet_id": receipts[0].from_wallet},
        )
