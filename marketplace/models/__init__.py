"""SQLModel table models; importing the package populates the metadata."""

from marketplace.models.contract import Contract, ContractStatus  # noqa: F401
from marketplace.models.funding import Funding, FundingStatus  # noqa: F401
from marketplace.models.request import Request, RequestStatus, RequestType  # noqa: F401
from marketplace.models.transaction import Transaction, TransactionType  # noqa: F401
