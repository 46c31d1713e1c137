import enum

from sqlalchemy import Column, DateTime, Enum, Integer, String
from sqlalchemy.sql import func

from metering.core.database import Base


class TransactionKind(str, enum.Enum):
    GRANT = "grant"
    RESERVE = "reserve"
    DEDUCT = "deduct"
    REFUND = "refund"
    RENEWAL = "renewal"
    PACK_PURCHASE = "pack_purchase"


class CreditTransaction(Base):
    """Append-only ledger row. Never updated or deleted; corrections are new rows."""

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, index=True, nullable=False)
    kind = Column(
        Enum(TransactionKind, values_callable=lambda e: [m.value for m in e], native_enum=False, length=16),
        index=True,
        nullable=False,
    )
    amount = Column(Integer, nullable=False)
    # Balance effect. A deduct only reclassifies reserved credits, so its delta is 0.
    delta = Column(Integer, nullable=False)
    job_id = Column(String, index=True, nullable=True)
    external_ref = Column(String, index=True, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
