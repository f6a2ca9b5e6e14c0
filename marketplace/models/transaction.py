"""
Transaction domain model: one immutable entry per ledger movement.

Each entry carries ``hash``, the SHA-256 hex digest of its own fields
concatenated in a fixed order (type, sender wallet, sender amount, sender
balance, receiver wallet, receiver amount, receiver balance, timestamp).
The digest covers a single entry only; it is not chained to the previous
entry, so it reveals edits to a record but not reordering or removal of
records.
"""

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Column, DateTime, Index
from sqlmodel import Field, SQLModel


class TransactionType(str, Enum):
    """Why the money moved."""

    TRANSFER = "T"
    FUNDING = "F"
    PROVIDER_PAYOUT = "P"
    REPAYMENT = "R"
    DISBURSEMENT = "D"


def canonical_timestamp(ts: datetime) -> str:
    """
    Naive-UTC ISO-8601 with microseconds.

    Stores differ on whether they hand back tz-aware datetimes (PostgreSQL)
    or naive ones (SQLite); hashing this form keeps the digest stable across
    a round-trip through either.
    """
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts.isoformat(timespec="microseconds")


class Transaction(SQLModel, table=True):
    """SQLModel table definition for the transaction log."""

    __tablename__ = "transactions"  # type: ignore[assignment]

    __table_args__ = (
        Index("ix_transactions_sender_created", "sender_wallet_id", "created_timestamp"),
        Index("ix_transactions_receiver_created", "receiver_wallet_id", "created_timestamp"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    type: TransactionType
    sender_wallet_id: str = Field(max_length=100)
    sender_amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    sender_balance: int = Field(sa_column=Column(BigInteger, nullable=False))
    receiver_wallet_id: str = Field(max_length=100)
    receiver_amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    receiver_balance: int = Field(sa_column=Column(BigInteger, nullable=False))
    created_timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
    )
    hash: str = Field(max_length=64)

    @classmethod
    def record(
        cls,
        type: TransactionType,
        sender_wallet_id: str,
        sender_amount: int,
        sender_balance: int,
        receiver_wallet_id: str,
        receiver_amount: int,
        receiver_balance: int,
        created_timestamp: Optional[datetime] = None,
    ) -> "Transaction":
        """Build a log entry and seal it with its hash."""
        created = created_timestamp or datetime.now(timezone.utc)
        entry = cls(
            type=type,
            sender_wallet_id=sender_wallet_id,
            sender_amount=sender_amount,
            sender_balance=sender_balance,
            receiver_wallet_id=receiver_wallet_id,
            receiver_amount=receiver_amount,
            receiver_balance=receiver_balance,
            created_timestamp=created,
            hash="",
        )
        entry.hash = entry.compute_hash()
        return entry

    def signature(self) -> str:
        return "".join(
            str(part)
            for part in (
                self.type.value,
                self.sender_wallet_id,
                self.sender_amount,
                self.sender_balance,
                self.receiver_wallet_id,
                self.receiver_amount,
                self.receiver_balance,
                canonical_timestamp(self.created_timestamp),
            )
        )

    def compute_hash(self) -> str:
        return hashlib.sha256(self.signature().encode("utf-8")).hexdigest()

    def is_intact(self) -> bool:
        """True if the stored hash still matches the entry's fields."""
        return self.hash == self.compute_hash()

    def __repr__(self) -> str:
        return (
            f"<Transaction id={self.id} {self.type.value} {self.sender_wallet_id} → "
            f"{self.receiver_wallet_id} {self.receiver_amount}>"
        )
