from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from metering.models.credit_transaction import TransactionKind


class CreditBalanceResponse(BaseModel):
    balance: int
    plan_key: str
    next_reset_at: Optional[datetime] = None


class CreditTransactionResponse(BaseModel):
    id: int
    kind: TransactionKind
    amount: int
    delta: int
    job_id: Optional[str] = None
    external_ref: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CreditGrantRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    reason: Optional[str] = None
