"""
Database model registry.

Importing this module ensures all table models are registered with
SQLModel's metadata, which is required before calling ``create_all()``.
"""

from marketplace.models.contract import Contract  # noqa: F401
from marketplace.models.funding import Funding  # noqa: F401
from marketplace.models.request import Request  # noqa: F401
from marketplace.models.transaction import Transaction  # noqa: F401
