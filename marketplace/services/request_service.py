"""
Request service: the workflow engine for RFPs, Proposals, RFFs and RPYs.

Owns the per-type status transition table, the typed read projections and
the two multi-row cascades:

- :meth:`RequestService.accept_proposal`: accept one Proposal, reject its
  siblings and close the parent RFP.
- :meth:`RequestService.request_funding`: move an accepted Proposal to
  FUNDING_REQUESTED and derive its RFF plus a NOT_FUNDED Contract.

Both cascades run inside one :func:`unit_of_work` with the rows they touch
locked (``SELECT ... FOR UPDATE``) and an in-process :class:`KeyedLock` held
on the parent key, and re-validate everything after the locks are taken.
A caller that loses a race therefore fails validation and writes nothing.
"""

import logging
from typing import Dict, List, Optional, Set

from sqlalchemy.exc import IntegrityError

from marketplace.core.config import settings
from marketplace.core.exceptions import (
    BusinessRuleViolation,
    ConflictException,
    ContractAmountsException,
    InvalidRequestId,
    InvalidRequestStatus,
    InvalidRequestType,
    InvalidStatusTransition,
    NotFoundException,
)
from marketplace.core.locks import KeyedLock, entity_locks
from marketplace.core.resilience import retry_with_backoff
from marketplace.db.session import unit_of_work
from marketplace.models.contract import Contract, ContractStatus
from marketplace.models.request import Request, RequestStatus, RequestType
from marketplace.repositories.contract_repo import ContractRepository
from marketplace.repositories.request_repo import RequestRepository
from marketplace.schemas.request import (
    Proposal,
    RequestCreate,
    RequestForFunding,
    RequestForPayment,
    RequestForProposal,
    RequestUpdate,
)

logger = logging.getLogger(__name__)


class RequestService:
    """Encapsulates CRUD, typed projections and workflow cascades for :class:`Request`."""

    def __init__(
        self,
        request_repo: RequestRepository,
        contract_repo: ContractRepository,
        locks: KeyedLock = entity_locks,
    ):
        self._repo = request_repo
        self._contract_repo = contract_repo
        self._locks = locks

    # ── Queries ──

    async def get_all_requests(self, skip: int = 0, limit: int = 100) -> List[Request]:
        return await self._repo.get_all(skip=skip, limit=limit)

    async def get_request(self, request_id: int) -> Request:
        """Raises :class:`NotFoundException` if the request does not exist."""
        request = await self._repo.get(request_id)
        if not request:
            raise NotFoundException("Request", request_id)
        return request

    async def get_requests_by_from_profile_id(
        self,
        profile_id: int,
        request_type: Optional[RequestType] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[Request]:
        return await self._repo.get_by_from_profile_id(profile_id, request_type, status)

    async def get_requests_by_to_profile_id(
        self,
        profile_id: int,
        request_type: Optional[RequestType] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[Request]:
        return await self._repo.get_by_to_profile_id(profile_id, request_type, status)

    async def get_requests_by_profile_id(self, profile_id: int) -> List[Request]:
        return await self._repo.get_by_profile_id(profile_id)

    async def get_requests_by_type(
        self, request_type: RequestType, status: Optional[RequestStatus] = None
    ) -> List[Request]:
        return await self._repo.get_by_type(request_type, status)

    async def get_requests_by_request_id(self, request_id: int) -> List[Request]:
        return await self._repo.get_by_request_id(request_id)

    # ── Typed projections ──

    async def get_request_for_proposal(self, request_id: int) -> RequestForProposal:
        return RequestForProposal.from_request(await self.get_request(request_id))

    async def get_proposal(self, request_id: int) -> Proposal:
        return Proposal.from_request(await self.get_request(request_id))

    async def get_request_for_funding(self, request_id: int) -> RequestForFunding:
        return RequestForFunding.from_request(await self.get_request(request_id))

    async def get_request_for_payment(self, request_id: int) -> RequestForPayment:
        return RequestForPayment.from_request(await self.get_request(request_id))

    async def get_request_for_proposals_from(self, profile_id: int) -> List[RequestForProposal]:
        requests = await self._repo.get_by_from_profile_id(profile_id, RequestType.RFP)
        return [RequestForProposal.from_request(r) for r in requests]

    async def get_request_for_proposals_to(self, profile_id: int) -> List[RequestForProposal]:
        requests = await self._repo.get_by_to_profile_id(profile_id, RequestType.RFP)
        return [RequestForProposal.from_request(r) for r in requests]

    async def get_proposals(self, rfp_id: int) -> List[Proposal]:
        """
        Every request linked to ``rfp_id``, projected as a Proposal.

        Raises :class:`InvalidRequestType` if any linked request is not a
        Proposal (e.g. ``rfp_id`` is itself a Proposal with an RFF child).
        """
        children = await self._repo.get_by_request_id(rfp_id)
        return [Proposal.from_request(child) for child in children]

    async def get_request_for_fundings_for(self, provider_id: int) -> List[RequestForFunding]:
        """
        The RFFs derived from the provider's FUNDING_REQUESTED proposals.

        A proposal with no linked request yet contributes nothing; one whose
        first linked request is not an RFF raises :class:`InvalidRequestType`.
        """
        proposals = await self._repo.get_by_from_profile_id(
            provider_id, RequestType.PRO, RequestStatus.FUNDING_REQUESTED
        )
        rffs: List[RequestForFunding] = []
        for proposal in proposals:
            children = await self._repo.get_by_request_id(proposal.id)
            if children:
                rffs.append(RequestForFunding.from_request(children[0]))
        return rffs

    # ── Commands ──

    async def create_request(self, request_in: RequestCreate) -> Request:
        """
        Create a new request.  It always starts OPEN.

        A ``request_id`` link must name an existing request
        (:class:`NotFoundException` otherwise).
        """
        if request_in.request_id is not None:
            await self._require_linked(request_in.request_id)

        request = Request(**request_in.model_dump(), status=RequestStatus.OPEN)
        try:
            created = await self._repo.create(request)
        except IntegrityError as exc:
            await self._repo.db.rollback()
            logger.warning("IntegrityError creating request: %s", exc)
            raise BusinessRuleViolation(
                "Request data violates a database constraint. Check all fields."
            )
        logger.info(
            "Created %s request %s",
            created.type.value,
            created.id,
            extra={"entity": "Request", "entity_id": created.id, "status": created.status.value},
        )
        return created

    async def update_request(self, request_id: int, request_in: RequestUpdate) -> Request:
        """
        Full replacement of a request's mutable fields.

        ``type`` and ``status`` are untouched: the type is immutable and the
        status changes only through :meth:`update_request_status`.
        """
        request = await self.get_request(request_id)
        if request_in.request_id is not None:
            await self._require_linked(request_in.request_id)
            await self._refuse_link_cycle(request_id, request_in.request_id)

        for key, value in request_in.model_dump().items():
            setattr(request, key, value)

        try:
            updated = await self._repo.update(request)
        except IntegrityError as exc:
            await self._repo.db.rollback()
            logger.warning("IntegrityError updating request %s: %s", request_id, exc)
            raise BusinessRuleViolation(
                "Request update violates a database constraint. Check all fields."
            )
        logger.info("Updated request %s", updated.id)
        return updated

    async def update_request_status(self, request_id: int, status: RequestStatus) -> Request:
        """Move a request to ``status`` if its type's transition table allows it."""
        async with self._locks.acquire(("request", request_id)):
            async with unit_of_work(self._repo.db):
                request = await self._repo.get_for_update(request_id)
                if not request:
                    raise NotFoundException("Request", request_id)
                check_status_transition(request, status)
                previous = request.status
                request.status = status

        logger.info(
            "Request %s status %s → %s",
            request_id,
            previous.value,
            status.value,
            extra={"entity": "Request", "entity_id": request_id, "status": status.value},
        )
        return request

    async def update_request_repayment(self, request_id: int, repayment: int) -> Request:
        """
        Set a request's repayment.

        If a contract was derived from the request, its ``repayment_amount``
        follows in the same transaction while the contract is still
        NOT_FUNDED (:class:`ContractAmountsException` unless the repayment is
        above the target).  Once any funding exists the amounts are fixed and
        the update raises :class:`ConflictException`.
        """
        if repayment < 1:
            raise BusinessRuleViolation(
                f"Repayment must be positive: {repayment}",
                details={"id": request_id, "repayment": repayment},
            )

        async with self._locks.acquire(("request", request_id)):
            contract = await self._contract_repo.get_by_request_id(request_id)
            if contract is None:
                return await self._set_repayment(request_id, repayment, None)
            async with self._locks.acquire(("contract", contract.id)):
                return await self._set_repayment(request_id, repayment, contract.id)

    async def delete_request(self, request_id: int) -> None:
        """
        Delete a request that nothing else points at.

        Raises :class:`ConflictException` if other requests link to it or a
        contract was derived from it.
        """
        await self.get_request(request_id)

        children = await self._repo.get_by_request_id(request_id)
        if children:
            raise ConflictException(
                f"Request {request_id} is referenced by other requests",
                details={"id": request_id, "linked": [c.id for c in children]},
            )
        if await self._contract_repo.get_by_request_id(request_id):
            raise ConflictException(
                f"Request {request_id} has a contract",
                details={"id": request_id},
            )

        try:
            await self._repo.delete(request_id)
        except IntegrityError as exc:
            await self._repo.db.rollback()
            logger.warning("IntegrityError deleting request %s: %s", request_id, exc)
            raise ConflictException(
                f"Request {request_id} is still referenced", details={"id": request_id}
            )
        logger.info("Deleted request %s", request_id)

    # ── Workflow cascades ──

    @retry_with_backoff()
    async def accept_proposal(self, proposal_id: int) -> List[int]:
        """
        Accept a Proposal, reject its siblings and close the parent RFP.

        Validation order: existence, type PRO, status OPEN, non-null parent
        link.  The parent RFP and all its children are then row-locked (RFP
        first, children by id).  The parent must be an OPEN RFP, so it closes
        exactly once, and the Proposal is validated again under those locks.
        Returns the ids of the rejected siblings, ascending.
        """
        proposal = await self.get_request(proposal_id)
        rfp_id = _check_acceptable(proposal)

        async with self._locks.acquire(("request", rfp_id)):
            async with unit_of_work(self._repo.db):
                rfp = await self._repo.get_for_update(rfp_id)
                if not rfp:
                    raise NotFoundException("Request", rfp_id)
                if not rfp.is_type(RequestType.RFP):
                    raise InvalidRequestType(rfp_id, rfp.type, expected=RequestType.RFP)
                if rfp.status != RequestStatus.OPEN:
                    raise InvalidRequestStatus(rfp_id, rfp.status)
                children = await self._repo.get_children_for_update(rfp_id)

                proposal = next((c for c in children if c.id == proposal_id), None)
                if proposal is None:
                    # Relinked or removed since the unlocked read.
                    moved = await self.get_request(proposal_id)
                    raise InvalidRequestId(proposal_id, moved.request_id)
                _check_acceptable(proposal)

                proposal.status = RequestStatus.ACCEPTED
                siblings = [c for c in children if c.id != proposal_id]
                for sibling in siblings:
                    sibling.status = RequestStatus.REJECTED
                rfp.status = RequestStatus.CLOSED

        rejected = sorted(s.id for s in siblings)
        logger.info(
            "Accepted proposal %s; rejected %s; closed RFP %s",
            proposal_id,
            rejected,
            rfp_id,
            extra={
                "entity": "Request",
                "entity_id": proposal_id,
                "status": RequestStatus.ACCEPTED.value,
            },
        )
        return rejected

    @retry_with_backoff()
    async def request_funding(
        self, proposal_id: int, repayment: int, wallet_id: Optional[str] = None
    ) -> Contract:
        """
        Ask investors to fund an accepted Proposal.

        In one transaction: the Proposal moves to FUNDING_REQUESTED, an RFF
        copying its title, description, cost and specifications is created
        with the given ``repayment``, and a NOT_FUNDED Contract is derived
        from the RFF.  ``ContractAmountsException`` (repayment not above
        cost) rolls all of it back.
        """
        wallet = wallet_id or settings.CONTRACT_WALLET_ID

        async with self._locks.acquire(("request", proposal_id)):
            async with unit_of_work(self._repo.db):
                proposal = await self._repo.get_for_update(proposal_id)
                if not proposal:
                    raise NotFoundException("Request", proposal_id)
                if not proposal.is_type(RequestType.PRO):
                    raise InvalidRequestType(proposal_id, proposal.type, expected=RequestType.PRO)
                if proposal.status != RequestStatus.ACCEPTED:
                    raise InvalidRequestStatus(proposal_id, proposal.status)
                proposal.status = RequestStatus.FUNDING_REQUESTED

                rff = await self._repo.add(
                    Request(
                        from_profile_id=proposal.from_profile_id,
                        to_profile_id=proposal.to_profile_id,
                        request_id=proposal.id,
                        title=proposal.title,
                        type=RequestType.RFF,
                        status=RequestStatus.OPEN,
                        description=proposal.description,
                        cost=proposal.cost,
                        repayment=repayment,
                        specifications=proposal.specifications,
                    )
                )
                contract = await self._contract_repo.add(Contract.from_request(rff, wallet))

        logger.info(
            "Funding requested for proposal %s: RFF %s, contract %s (target=%d, repayment=%d)",
            proposal_id,
            rff.id,
            contract.id,
            contract.target_amount,
            contract.repayment_amount,
            extra={"entity": "Contract", "entity_id": contract.id, "request_id": rff.id},
        )
        return contract

    # ── Internal helpers ──

    async def _set_repayment(
        self, request_id: int, repayment: int, contract_id: Optional[int]
    ) -> Request:
        async with unit_of_work(self._repo.db):
            request = await self._repo.get_for_update(request_id)
            if not request:
                raise NotFoundException("Request", request_id)
            if contract_id is not None:
                contract = await self._contract_repo.get_for_update(contract_id)
                if not contract:
                    raise NotFoundException("Contract", contract_id)
                if contract.status != ContractStatus.NOT_FUNDED:
                    raise ConflictException(
                        f"Contract {contract_id} is {contract.status.value}; "
                        "its repayment can no longer change",
                        details={"id": request_id, "contract_id": contract_id},
                    )
                if repayment <= contract.target_amount:
                    raise ContractAmountsException(contract.target_amount, repayment)
                contract.repayment_amount = repayment
            request.repayment = repayment

        logger.info(
            "Request %s repayment set to %d",
            request_id,
            repayment,
            extra={"entity": "Request", "entity_id": request_id, "amount": repayment},
        )
        return request

    async def _refuse_link_cycle(self, request_id: int, linked_id: int) -> None:
        """
        Raise :class:`InvalidRequestId` if following the links from
        ``linked_id`` leads back to ``request_id``.
        """
        seen: Set[int] = set()
        current: Optional[int] = linked_id
        while current is not None and current not in seen:
            if current == request_id:
                raise InvalidRequestId(request_id, linked_id)
            seen.add(current)
            linked = await self._repo.get(current)
            current = linked.request_id if linked else None

    async def _require_linked(self, linked_id: int) -> Request:
        linked = await self._repo.get(linked_id)
        if not linked:
            raise NotFoundException("Request", linked_id)
        return linked


def _check_acceptable(proposal: Request) -> int:
    """Validate a proposal for acceptance and return its parent RFP id."""
    if not proposal.is_type(RequestType.PRO):
        raise InvalidRequestType(proposal.id, proposal.type, expected=RequestType.PRO)
    if proposal.status != RequestStatus.OPEN:
        raise InvalidRequestStatus(proposal.id, proposal.status)
    if proposal.request_id is None:
        raise InvalidRequestId(proposal.id, None)
    return proposal.request_id


# ── Status transition rules ──

_O, _C, _ACC = RequestStatus.OPEN, RequestStatus.CLOSED, RequestStatus.ACCEPTED
_FR, _SD, _SA = (
    RequestStatus.FUNDING_REQUESTED,
    RequestStatus.SOLUTION_DELIVERED,
    RequestStatus.SOLUTION_ACCEPTED,
)
_SP, _RP, _FD, _REJ = (
    RequestStatus.SOLUTION_PAID,
    RequestStatus.REPAID,
    RequestStatus.FUNDS_DISBURSED,
    RequestStatus.REJECTED,
)

_ALLOWED_TRANSITIONS: Dict[RequestType, Dict[RequestStatus, Set[RequestStatus]]] = {
    RequestType.RFP: {_O: {_C, _REJ}},
    RequestType.PRO: {
        _O: {_ACC, _REJ},
        _ACC: {_FR, _SD},
        _FR: {_SD, _REJ},
        _SD: {_SA},
        _SA: {_SP},
        _SP: {_RP},
        _RP: {_FD},
    },
    RequestType.RFF: {_O: {_C, _REJ}, _C: {_RP}, _RP: {_FD}},
    RequestType.RPY: {_O: {_SP, _REJ}},
}


def check_status_transition(request: Request, requested: RequestStatus) -> None:
    """
    Enforce the per-type request lifecycle.

    Re-asserting the current status is allowed.  REJECTED and
    FUNDS_DISBURSED are terminal for every type; CLOSED is terminal for all
    but an RFF, which goes on to be repaid.
    """
    if requested == request.status:
        return
    allowed = _ALLOWED_TRANSITIONS.get(request.type, {}).get(request.status, set())
    if requested not in allowed:
        raise InvalidStatusTransition("Request", request.id, request.status, requested)
