"""
Pydantic schemas for the request workflow.

Two families:

- ``RequestCreate`` / ``RequestUpdate``: validated input for the write
  operations of :class:`~marketplace.services.request_service.RequestService`.
- Typed read views (``RequestForProposal``, ``Proposal``,
  ``RequestForFunding``, ``RequestForPayment``): frozen projections of a
  stored :class:`~marketplace.models.request.Request`.  Building one never
  touches the store; a type mismatch raises :class:`InvalidRequestType`.
"""

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketplace.core.exceptions import InvalidRequestType
from marketplace.models.request import Request, RequestStatus, RequestType


class RequestBase(BaseModel):
    """Fields common to request creation and update payloads."""

    from_profile_id: int = Field(..., ge=1, description="Profile the request originates from")
    to_profile_id: int = Field(..., ge=1, description="Profile the request is intended for")
    request_id: Optional[int] = Field(
        default=None,
        ge=1,
        description="Related request: parent RFP for a Proposal, Proposal for an RFF",
    )
    title: str = Field(..., min_length=1, max_length=300, examples=["Cold-chain tracking"])
    description: str = Field(default="")
    cost: int = Field(..., ge=1, description="Cost in whole currency units")
    repayment: Optional[int] = Field(default=None, ge=1)
    specifications: str = Field(default="")

    @field_validator("title")
    @classmethod
    def validate_title_not_blank(cls, v: str) -> str:
        """Reject whitespace-only titles."""
        if not v.strip():
            raise ValueError("title must not be blank")
        return v.strip()


class RequestCreate(RequestBase):
    """
    Payload for ``RequestService.create_request``.

    ``status`` is not accepted: every request starts OPEN.
    """

    type: RequestType


class RequestUpdate(RequestBase):
    """
    Full replacement of a request's mutable fields.

    ``type`` and ``status`` are absent; the type never changes and the status
    moves only through the transition table.
    """

    pass


# ── Typed read views ──


class RequestView(BaseModel):
    """Frozen projection of a stored request of type ``VIEW_TYPE``."""

    VIEW_TYPE: ClassVar[RequestType]

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    from_profile_id: int
    to_profile_id: int
    request_id: Optional[int] = None
    title: str
    type: RequestType
    status: RequestStatus
    description: str
    cost: int
    repayment: Optional[int] = None
    specifications: str
    created_timestamp: datetime

    @classmethod
    def from_request(cls, request: Request):
        if request.type != cls.VIEW_TYPE:
            raise InvalidRequestType(request.id, request.type, expected=cls.VIEW_TYPE)
        return cls.model_validate(request)


class RequestForProposal(RequestView):
    """An RFP: posted by a requester; ``request_id`` names the product."""

    VIEW_TYPE: ClassVar[RequestType] = RequestType.RFP

    @property
    def requester_id(self) -> int:
        return self.from_profile_id

    @property
    def product_id(self) -> Optional[int]:
        return self.request_id


class Proposal(RequestView):
    """A provider's answer to an RFP."""

    VIEW_TYPE: ClassVar[RequestType] = RequestType.PRO

    @property
    def provider_id(self) -> int:
        return self.from_profile_id

    @property
    def request_for_proposal_id(self) -> Optional[int]:
        return self.request_id


class RequestForFunding(RequestView):
    """Funding request derived from an accepted Proposal."""

    VIEW_TYPE: ClassVar[RequestType] = RequestType.RFF

    @property
    def provider_id(self) -> int:
        return self.from_profile_id

    @property
    def proposal_id(self) -> Optional[int]:
        return self.request_id


class RequestForPayment(RequestView):
    VIEW_TYPE: ClassVar[RequestType] = RequestType.RPY

    @property
    def nft_token_id(self) -> Optional[int]:
        return self.request_id
