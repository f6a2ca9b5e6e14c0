"""
Contract domain model: the funding aggregate.

A Contract is derived from a Request-for-Funding and owns its Fundings.  All
money rules live on the aggregate itself:

- ``repayment_amount > target_amount`` (yield must be positive), enforced by
  :meth:`Contract.create`;
- ``raised_amount() <= target_amount`` and
  ``committed_returns() <= repayment_amount``, enforced by
  :meth:`Contract.fund`.

``fundings`` is loaded eagerly (``selectin``) and the repository always
re-reads it with ``populate_existing``, so the in-object list never outlives
the store's view of it.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import BigInteger, CheckConstraint, Column, DateTime, Integer
from sqlmodel import Field, Relationship, SQLModel

from marketplace.core.exceptions import ContractAmountsException, FundingAmountException
from marketplace.models.funding import Funding

if TYPE_CHECKING:
    from marketplace.models.request import Request


class ContractStatus(str, Enum):
    """Lifecycle states for a Contract."""

    NOT_FUNDED = "NF"
    PARTIALLY_FUNDED = "PF"
    FULLY_FUNDED = "FF"
    FUNDS_TRANSFERRED_TO_PROVIDER = "FTP"
    FUNDS_REPAID = "RP"
    FUNDS_DISBURSED = "FD"


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class Contract(SQLModel, table=True):
    """SQLModel table definition for contracts."""

    __tablename__ = "contracts"  # type: ignore[assignment]

    __table_args__ = (
        CheckConstraint("target_amount >= 1", name="ck_contracts_target_positive"),
        CheckConstraint(
            "repayment_amount > target_amount", name="ck_contracts_repayment_exceeds_target"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(
        sa_column=Column(Integer, nullable=False, unique=True, index=True),
    )
    wallet_id: str = Field(max_length=100)
    target_amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    repayment_amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    status: ContractStatus = Field(default=ContractStatus.NOT_FUNDED, index=True)
    created_timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
    )

    fundings: List[Funding] = Relationship(
        back_populates="contract",
        sa_relationship_kwargs={
            "lazy": "selectin",
            "cascade": "all, delete-orphan",
            "order_by": "Funding.id",
        },
    )

    # ── Construction ──

    @classmethod
    def create(
        cls, request_id: int, wallet_id: str, target_amount: int, repayment_amount: int
    ) -> "Contract":
        """Build a NOT_FUNDED contract; the yield must be positive."""
        if target_amount >= repayment_amount:
            raise ContractAmountsException(target_amount, repayment_amount)
        return cls(
            request_id=request_id,
            wallet_id=wallet_id,
            target_amount=target_amount,
            repayment_amount=repayment_amount,
            status=ContractStatus.NOT_FUNDED,
            fundings=[],
        )

    @classmethod
    def from_request(cls, rff: "Request", wallet_id: str) -> "Contract":
        """Derive a contract from a Request-for-Funding (cost → target)."""
        return cls.create(
            request_id=rff.id,
            wallet_id=wallet_id,
            target_amount=rff.cost,
            repayment_amount=rff.repayment or 0,
        )

    # ── Derived amounts ──

    def yield_percentage(self) -> int:
        """Percentage markup of repayment over target, rounded half-up."""
        ratio = Decimal(self.repayment_amount) / Decimal(self.target_amount)
        return _round(ratio * 100 - 100)

    def raised_amount(self) -> int:
        return sum(funding.funding_amount for funding in self.fundings)

    def outstanding_amount(self) -> int:
        return self.target_amount - self.raised_amount()

    def committed_returns(self) -> int:
        """Total already owed to investors across every Funding."""
        return sum(funding.repayment_amount for funding in self.fundings)

    def funding_returns(self, amount: int) -> int:
        """What an investor putting in ``amount`` is owed at repayment."""
        return _round(Decimal(amount) * (self.yield_percentage() + 100) / 100)

    def funding_percentage(self, amount: int) -> int:
        """Share of the target that ``amount`` represents, truncated."""
        return int(Decimal(amount) / Decimal(self.target_amount) * 100)

    # ── Commands ──

    def fund(self, profile_id: int, amount: int) -> Funding:
        """
        Add an investor's funding.

        Raises :class:`FundingAmountException` (leaving the contract unchanged)
        if ``amount`` is not positive or exceeds the outstanding amount.
        The Funding is appended and the status recomputed together.

        Per-funding returns are rounded, so their sum never exceeds
        ``repayment_amount``: the Funding that closes the contract is owed
        whatever is left, and an earlier one is capped so the principal still
        outstanding stays covered.
        """
        outstanding = self.outstanding_amount()
        if amount <= 0 or amount > outstanding:
            raise FundingAmountException(amount, outstanding, contract_id=self.id)

        unallocated = self.repayment_amount - self.committed_returns()
        if amount == outstanding:
            returns = unallocated
        else:
            returns = min(self.funding_returns(amount), unallocated - (outstanding - amount))

        funding = Funding.create(
            contract_id=self.id,
            profile_id=profile_id,
            funding_amount=amount,
            repayment_amount=returns,
        )
        self.fundings.append(funding)
        self.status = (
            ContractStatus.FULLY_FUNDED
            if amount == outstanding
            else ContractStatus.PARTIALLY_FUNDED
        )
        return funding

    def disburse(self) -> None:
        """Pay out every Funding; does nothing unless the contract is FUNDS_REPAID."""
        if self.status != ContractStatus.FUNDS_REPAID:
            return
        self.status = ContractStatus.FUNDS_DISBURSED
        for funding in self.fundings:
            funding.disburse()

    def __repr__(self) -> str:
        return (
            f"<Contract id={self.id} request={self.request_id} "
            f"status={self.status.value} raised={self.raised_amount()}/{self.target_amount}>"
        )
