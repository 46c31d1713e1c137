from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from metering.core.database import Base


class CreditAccount(Base):
    __tablename__ = "credit_accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),)

    account_id = Column(String, primary_key=True, index=True)
    # Cached projection of sum(credit_transactions.delta); mutated only by CreditLedger.
    balance = Column(Integer, nullable=False, default=0)
    plan_key = Column(String, index=True, nullable=False, default="free")
    plan_status = Column(String, nullable=True)
    plan_credits = Column(Integer, nullable=False, default=0)
    next_reset_at = Column(DateTime(timezone=True), nullable=True)
    provider_customer_id = Column(String, index=True, nullable=True)
    provider_subscription_id = Column(String, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
