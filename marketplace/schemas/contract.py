"""Pydantic schemas for contract creation and funding input."""

from pydantic import BaseModel, Field, model_validator

from marketplace.core.exceptions import ContractAmountsException


class ContractCreate(BaseModel):
    """Payload for ``ContractService.create_contract``."""

    request_id: int = Field(..., ge=1, description="The Request-for-Funding this contract funds")
    wallet_id: str = Field(
        ...,
        pattern=r"^[A-Za-z0-9]{10,100}$",
        description="Escrow wallet holding the raised funds",
        examples=["MarketplaceEscrowWallet0001"],
    )
    target_amount: int = Field(..., ge=1)
    repayment_amount: int = Field(..., ge=1)

    @model_validator(mode="after")
    def validate_positive_yield(self) -> "ContractCreate":
        if self.target_amount >= self.repayment_amount:
            raise ContractAmountsException(self.target_amount, self.repayment_amount)
        return self

