"""
Transaction repository: append-only access to the ``transactions`` table.

Log entries are immutable once written, so the inherited ``update`` and
``delete`` are refused.
"""

from typing import Any, List, Optional

from sqlalchemy import or_
from sqlalchemy.future import select

from marketplace.core.exceptions import BusinessRuleViolation
from marketplace.models.transaction import Transaction
from marketplace.repositories.base import BaseRepository


class TransactionRepository(BaseRepository[Transaction]):
    """Concrete repository for :class:`Transaction` entities."""

    async def get_by_wallet(self, wallet_id: Optional[str] = None) -> List[Transaction]:
        """Entries sent or received by ``wallet_id`` (all entries if omitted), newest first."""
        stmt = select(self.model)
        if wallet_id is not None:
            stmt = stmt.where(
                or_(
                    self.model.sender_wallet_id == wallet_id,
                    self.model.receiver_wallet_id == wallet_id,
                )
            )
        stmt = stmt.order_by(self.model.created_timestamp.desc(), self.model.id.desc())
        return await self._list(stmt)

    async def update(self, entity: Transaction) -> Transaction:
        raise BusinessRuleViolation(
            "Transactions are immutable", details={"id": entity.id}
        )

    async def delete(self, id: Any) -> bool:
        raise BusinessRuleViolation("Transactions are immutable", details={"id": id})
