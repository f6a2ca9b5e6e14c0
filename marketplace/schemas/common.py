"""
Shared Pydantic schemas.

``ErrorResponse`` documents the envelope :func:`add_exception_handlers`
renders, so a host application can declare it in its OpenAPI responses.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error envelope for every domain failure."""

    error: bool = Field(default=True, description="Always ``true`` for errors")
    message: str = Field(
        ...,
        description="Human-readable error description",
        examples=["Request with id '42' not found"],
    )
    details: Optional[Any] = Field(
        default=None,
        description="Entity id and offending value, when known",
        examples=[{"entity": "Request", "id": 42}],
    )
