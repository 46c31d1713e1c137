from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from metering.core.database import Base


class BillingEvent(Base):
    __tablename__ = "billing_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String, unique=True, index=True, nullable=False)
    event_type = Column(String, index=True, nullable=False)
    account_id = Column(String, index=True, nullable=True)
    outcome = Column(String, nullable=False)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
