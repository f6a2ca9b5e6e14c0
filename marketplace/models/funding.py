"""
Funding domain model.

A single investor's contribution to a Contract.  Created only through
``Contract.fund()``; ``funding_amount`` and ``repayment_amount`` never change
afterwards, and ``disbursed_amount`` / ``status`` change only via
:meth:`Funding.disburse`.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import BigInteger, CheckConstraint, Column, DateTime
from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from marketplace.models.contract import Contract


class FundingStatus(str, Enum):
    """Allowed states for a Funding."""

    FUNDS_IN_CONTRACT = "FIC"
    FUNDS_DISBURSED = "FD"


class Funding(SQLModel, table=True):
    """SQLModel table definition for fundings."""

    __tablename__ = "fundings"  # type: ignore[assignment]

    __table_args__ = (
        CheckConstraint("funding_amount >= 1", name="ck_fundings_amount_positive"),
        CheckConstraint("repayment_amount >= 1", name="ck_fundings_repayment_positive"),
        CheckConstraint("disbursed_amount >= 0", name="ck_fundings_disbursed_non_negative"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    contract_id: Optional[int] = Field(
        default=None, foreign_key="contracts.id", index=True, ondelete="CASCADE"
    )
    profile_id: int = Field(index=True)
    status: FundingStatus = Field(default=FundingStatus.FUNDS_IN_CONTRACT)
    funding_amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    repayment_amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    disbursed_amount: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    created_timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
    )

    contract: Optional["Contract"] = Relationship(back_populates="fundings")

    @classmethod
    def create(
        cls,
        contract_id: Optional[int],
        profile_id: int,
        funding_amount: int,
        repayment_amount: int,
    ) -> "Funding":
        return cls(
            contract_id=contract_id,
            profile_id=profile_id,
            status=FundingStatus.FUNDS_IN_CONTRACT,
            funding_amount=funding_amount,
            repayment_amount=repayment_amount,
            disbursed_amount=0,
        )

    def disburse(self) -> None:
        self.disbursed_amount = self.repayment_amount
        self.status = FundingStatus.FUNDS_DISBURSED

    def __repr__(self) -> str:
        return (
            f"<Funding id={self.id} contract={self.contract_id} investor={self.profile_id} "
            f"amount={self.funding_amount} status={self.status.value}>"
        )
