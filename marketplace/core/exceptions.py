"""
Domain exceptions and FastAPI exception handler registration.

Every failure the core raises for an expected business condition derives from
:class:`AppException`, which carries an HTTP-style ``status_code``, a
human-readable ``message`` and a ``details`` dict with the entity id and the
offending value.  The service layer raises these without importing any web
framework; a FastAPI host can call :func:`add_exception_handlers` to render
them as a consistent JSON envelope::

    {
        "error": true,
        "message": "<human-readable description>",
        "details": {...}
    }

Taxonomy:
- *not found* (404): the referenced Request / Contract / Funding does not exist.
- *invalid state* (422): the entity's current type or status forbids the operation.
- *invariant violation* (422): amounts fail a business rule.
- *conflict* (409): a uniqueness rule would be broken.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from marketplace.core.resilience import CircuitBreakerError

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────────────────
# Base classes
# ────────────────────────────────────────────────────────────────────────────


class AppException(Exception):
    """Base exception for all application-level errors."""

    def __init__(self, status_code: int, message: str, details: Any = None):
        self.status_code = status_code
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundException(AppException):
    """Entity not found (404)."""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            status_code=404,
            message=f"{resource} with id '{identifier}' not found",
            details={"entity": resource, "id": identifier},
        )


class ConflictException(AppException):
    """Unique-constraint violation (409)."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(status_code=409, message=message, details=details)


class BusinessRuleViolation(AppException):
    """Business rule was violated (422)."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(status_code=422, message=message, details=details)


# ────────────────────────────────────────────────────────────────────────────
# Request workflow
# ────────────────────────────────────────────────────────────────────────────


class RequestException(BusinessRuleViolation):
    """Base class for request workflow failures."""


class InvalidRequestType(RequestException):
    """The request's stored type does not allow the operation."""

    def __init__(self, request_id: Any, request_type: Any, expected: Any = None):
        message = f"Unable to process request {request_id} of type={_value(request_type)}"
        if expected is not None:
            message += f" (expected {_value(expected)})"
        super().__init__(
            message,
            details={
                "id": request_id,
                "type": _value(request_type),
                "expected": _value(expected),
            },
        )


class InvalidRequestStatus(RequestException):
    """The request's current status does not allow the operation."""

    def __init__(self, request_id: Any, status: Any):
        super().__init__(
            f"Unable to process request {request_id} of status={_value(status)}",
            details={"id": request_id, "status": _value(status)},
        )


class InvalidRequestId(RequestException):
    """The request's ``request_id`` link is missing or dangling."""

    def __init__(self, request_id: Any, linked_id: Optional[Any]):
        super().__init__(
            f"Unable to process request {request_id} with requestId={linked_id}",
            details={"id": request_id, "request_id": linked_id},
        )


class InvalidStatusTransition(BusinessRuleViolation):
    """Requested status is not reachable from the current status."""

    def __init__(self, entity: str, entity_id: Any, current: Any, requested: Any):
        super().__init__(
            f"Invalid status transition for {entity} {entity_id}: "
            f"'{_value(current)}' → '{_value(requested)}'",
            details={
                "entity": entity,
                "id": entity_id,
                "current": _value(current),
                "requested": _value(requested),
            },
        )


# ────────────────────────────────────────────────────────────────────────────
# Contract / funding
# ────────────────────────────────────────────────────────────────────────────


class ContractException(BusinessRuleViolation):
    """Base class for contract failures."""


class ContractAmountsException(ContractException):
    """Repayment amount must be strictly greater than the target amount."""

    def __init__(self, target_amount: int, repayment_amount: int):
        super().__init__(
            f"Repayment amount ({repayment_amount}) must be greater than "
            f"target amount ({target_amount})",
            details={"target_amount": target_amount, "repayment_amount": repayment_amount},
        )


class FundingAmountException(ContractException):
    """Funding amount is not positive or exceeds the outstanding amount."""

    def __init__(self, funding_amount: int, outstanding_amount: int, contract_id: Any = None):
        super().__init__(
            f"Funding amount ({funding_amount}) must be positive and must not exceed "
            f"the outstanding amount ({outstanding_amount})",
            details={
                "contract_id": contract_id,
                "funding_amount": funding_amount,
                "outstanding_amount": outstanding_amount,
            },
        )


class DisburseContractException(ContractException):
    """Contract is not in a state that allows disbursement."""

    def __init__(self, contract_id: Any, status: Any):
        super().__init__(
            f"Unable to disburse contract {contract_id} of status={_value(status)}",
            details={"id": contract_id, "status": _value(status)},
        )


class RequestIdNotFound(AppException):
    """No contract exists for the given request id (404)."""

    def __init__(self, request_id: Any):
        super().__init__(
            status_code=404,
            message=f"Contract with requestId '{request_id}' not found",
            details={"request_id": request_id},
        )


# ────────────────────────────────────────────────────────────────────────────
# Ledger
# ────────────────────────────────────────────────────────────────────────────


class LedgerException(BusinessRuleViolation):
    """Base class for ledger failures."""


class InvalidAmount(LedgerException):
    """Transfer amount must be positive."""

    def __init__(self, amount: int):
        super().__init__(f"Amount must be positive: {amount}", details={"amount": amount})


class InvalidBalance(LedgerException):
    """The wallet is unknown to the ledger."""

    def __init__(self, wallet_id: str):
        super().__init__(
            f"Invalid balance @ wallet address {wallet_id}",
            details={"wallet_id": wallet_id},
        )


class InsufficientFunds(LedgerException):
    """The paying wallet cannot cover the amount."""

    def __init__(self, wallet_id: str, balance: int, amount: int):
        super().__init__(
            f"Wallet {wallet_id} has balance {balance}, cannot pay {amount}",
            details={"wallet_id": wallet_id, "balance": balance, "amount": amount},
        )


def _value(v: Any) -> Any:
    """Render enums by value for messages and details."""
    return getattr(v, "value", v)


# ────────────────────────────────────────────────────────────────────────────
# FastAPI exception handler registration
# ────────────────────────────────────────────────────────────────────────────


def add_exception_handlers(app: FastAPI) -> None:
    """Register handlers that render core errors on a FastAPI host application."""

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        """Handle domain exceptions raised by the service layer."""
        logger.warning(
            "%s on %s %s: %s",
            type(exc).__name__,
            request.method,
            request.url.path,
            exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": True, "message": exc.message, "details": exc.details},
        )

    @app.exception_handler(CircuitBreakerError)
    async def circuit_breaker_handler(request: Request, exc: CircuitBreakerError) -> JSONResponse:
        """The store is failing fast; tell the caller when to retry."""
        return JSONResponse(
            status_code=503,
            headers={"Retry-After": str(int(exc.retry_after) + 1)},
            content={"error": True, "message": str(exc), "details": None},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unexpected exceptions."""
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": True,
                "message": "Internal Server Error. Please contact support.",
                "details": None,
            },
        )
