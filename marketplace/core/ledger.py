"""
In-memory wallet ledger.

A mapping from opaque wallet id to integer balance, mutated only through
:meth:`Ledger.transfer` and :meth:`Ledger.transfer_batch`.  Both legs of a
transfer change together or not at all.

Locking:
    Each wallet owns a ``threading.Lock``.  A transfer takes the locks of every
    wallet it touches in sorted wallet-id order, so transfers on disjoint
    wallet pairs run independently and transfers sharing a wallet serialize
    without deadlocking.  No lock is held across an ``await``.

Overdrafts:
    By default the ledger does not check that the sender can cover the
    amount.  Callers that must not overdraw (``SettlementService``) pass
    ``allow_overdraft=False``.

The set of wallets is fixed by the seed balances given at construction.  The
composition root (``MarketplaceCore``) owns the single instance and hands it
to services; there is no module-level ledger.
"""

import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from marketplace.core.exceptions import InsufficientFunds, InvalidAmount, InvalidBalance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferReceipt:
    """Post-transfer balances of both legs, read under the same locks."""

    from_wallet: str
    to_wallet: str
    amount: int
    from_balance: int
    to_balance: int


class Ledger:
    """Keyed balance table with atomic two-party transfers."""

    def __init__(self, seed_balances: Optional[Mapping[str, int]] = None):
        self._entries: Dict[str, int] = dict(seed_balances or {})
        self._locks: Dict[str, threading.Lock] = {w: threading.Lock() for w in self._entries}
        logger.info("Ledger initialized with %d wallets", len(self._entries))

    # ── Queries ──

    def get_balance(self, wallet_id: str) -> Optional[int]:
        """Current balance, or ``None`` for an unknown wallet."""
        lock = self._locks.get(wallet_id)
        if lock is None:
            return None
        with lock:
            return self._entries[wallet_id]

    def get_entries(self) -> Mapping[str, int]:
        """Read-only snapshot of every balance, consistent across wallets."""
        with self._locked(self._entries):
            return MappingProxyType(dict(self._entries))

    def __contains__(self, wallet_id: object) -> bool:
        return wallet_id in self._entries

    # ── Commands ──

    def transfer(
        self, from_wallet: str, to_wallet: str, amount: int, allow_overdraft: bool = True
    ) -> TransferReceipt:
        """
        Move ``amount`` from ``from_wallet`` to ``to_wallet``.

        Raises :class:`InvalidAmount` when ``amount <= 0`` and
        :class:`InvalidBalance` when either wallet is unknown; no balance
        changes in either case.
        """
        return self.transfer_batch(
            [(from_wallet, to_wallet, amount)], allow_overdraft=allow_overdraft
        )[0]

    def transfer_batch(
        self, transfers: Sequence[Tuple[str, str, int]], allow_overdraft: bool = True
    ) -> List[TransferReceipt]:
        """
        Apply several transfers as one all-or-nothing unit.

        Every leg is validated before any balance moves.  Receipts are
        returned in input order; balances in each receipt are those right
        after that leg was applied.

        With ``allow_overdraft=False`` the batch is refused with
        :class:`InsufficientFunds` if any leg would take its sender below
        zero.  The check runs under the same locks as the update.
        """
        for from_wallet, to_wallet, amount in transfers:
            if amount <= 0:
                raise InvalidAmount(amount)
            for wallet in (from_wallet, to_wallet):
                if wallet not in self._entries:
                    raise InvalidBalance(wallet)

        wallets = {w for from_w, to_w, _ in transfers for w in (from_w, to_w)}
        receipts: List[TransferReceipt] = []
        with self._locked(wallets):
            if not allow_overdraft:
                self._check_funds(transfers)
            for from_wallet, to_wallet, amount in transfers:
                self._entries[from_wallet] -= amount
                self._entries[to_wallet] += amount
                receipts.append(
                    TransferReceipt(
                        from_wallet=from_wallet,
                        to_wallet=to_wallet,
                        amount=amount,
                        from_balance=self._entries[from_wallet],
                        to_balance=self._entries[to_wallet],
                    )
                )

        for receipt in receipts:
            logger.info(
                "Transferred %d from %s to %s",
                receipt.amount,
                receipt.from_wallet,
                receipt.to_wallet,
                extra={"wallet_id": receipt.from_wallet, "amount": receipt.amount},
            )
        return receipts

    # ── Internal helpers ──

    def _check_funds(self, transfers: Sequence[Tuple[str, str, int]]) -> None:
        projected = {w: self._entries[w] for leg in transfers for w in leg[:2]}
        for from_wallet, to_wallet, amount in transfers:
            if projected[from_wallet] < amount:
                raise InsufficientFunds(from_wallet, projected[from_wallet], amount)
            projected[from_wallet] -= amount
            projected[to_wallet] += amount

    def _locked(self, wallets: Iterable[str]) -> ExitStack:
        """Acquire the locks of ``wallets`` in sorted order."""
        stack = ExitStack()
        for wallet in sorted(set(wallets)):
            stack.enter_context(self._locks[wallet])
        return stack
