"""
Request domain model.

One table holds every workflow record.  ``type`` is the discriminant: an RFP
posted by a requester, a provider's Proposal (PRO), a Request-for-Funding
(RFF) derived from an accepted Proposal, or a Request-for-Payment (RPY).
Typed views are projected on read (``marketplace.schemas.request``); they are
never stored.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
)
from sqlmodel import Field, SQLModel


class RequestType(str, Enum):
    """Request discriminant."""

    RFP = "RFP"  # request for proposal
    PRO = "PRO"  # proposal from a solution provider
    RFF = "RFF"  # request for funding
    RPY = "RPY"  # request for payment


class RequestStatus(str, Enum):
    """Workflow states shared by every request type."""

    OPEN = "O"
    CLOSED = "C"
    ACCEPTED = "ACC"
    FUNDING_REQUESTED = "FR"
    SOLUTION_DELIVERED = "SD"
    SOLUTION_ACCEPTED = "SA"
    SOLUTION_PAID = "SP"
    REPAID = "RP"
    FUNDS_DISBURSED = "FD"
    REJECTED = "REJ"


class Request(SQLModel, table=True):
    """
    SQLModel table definition for requests.

    - ``request_id`` is a self-referencing FK: a Proposal points at its RFP,
      an RFF at the Proposal it funds.  ``ON DELETE RESTRICT`` keeps children
      from dangling.
    - Amounts are whole currency units stored as BIGINT.
    """

    __tablename__ = "requests"  # type: ignore[assignment]

    __table_args__ = (
        Index("ix_requests_from_profile_type", "from_profile_id", "type"),
        Index("ix_requests_to_profile_type", "to_profile_id", "type"),
        CheckConstraint("cost >= 1", name="ck_requests_cost_positive"),
        CheckConstraint(
            "repayment IS NULL OR repayment >= 1", name="ck_requests_repayment_positive"
        ),
        CheckConstraint("length(title) > 0", name="ck_requests_title_not_empty"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    from_profile_id: int = Field(index=True)
    to_profile_id: int = Field(index=True)
    request_id: Optional[int] = Field(
        default=None,
        sa_column=Column(
            Integer, ForeignKey("requests.id", ondelete="RESTRICT"), nullable=True, index=True
        ),
    )
    title: str = Field(max_length=300)
    type: RequestType = Field(index=True)
    status: RequestStatus = Field(default=RequestStatus.OPEN, index=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    cost: int = Field(sa_column=Column(BigInteger, nullable=False))
    repayment: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    specifications: str = Field(sa_column=Column(Text, nullable=False))
    created_timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
    )

    def is_type(self, request_type: RequestType) -> bool:
        return self.type == request_type

    @property
    def is_open(self) -> bool:
        return self.status == RequestStatus.OPEN

    def __repr__(self) -> str:
        return f"<Request id={self.id} type={self.type.value} status={self.status.value}>"
