import enum
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from metering.core.database import Base


def _enum_column(enum_cls):
    return Enum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=16)


class JobType(str, enum.Enum):
    GENERATION = "generation"
    EXPORT = "export"
    HERO_CREATION = "hero_creation"
    CALIBRATION = "calibration"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobItemStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_JOB_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    owner_id = Column(String, index=True, nullable=False)
    project_id = Column(String, index=True, nullable=True)
    type = Column(_enum_column(JobType), index=True, nullable=False)
    status = Column(_enum_column(JobStatus), index=True, nullable=False, default=JobStatus.PENDING)

    total_items = Column(Integer, nullable=False)
    completed_items = Column(Integer, nullable=False, default=0)
    failed_items = Column(Integer, nullable=False, default=0)

    credits_per_item = Column(Integer, nullable=False, default=0)
    credits_reserved = Column(Integer, nullable=False, default=0)
    credits_spent = Column(Integer, nullable=False, default=0)
    credits_refunded = Column(Integer, nullable=False, default=0)
    refund_issued = Column(Boolean, nullable=False, default=False)

    error_message = Column(Text, nullable=True)
    job_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship("JobItem", back_populates="job", order_by="JobItem.id")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class JobItem(Base):
    __tablename__ = "job_items"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String, ForeignKey("jobs.id"), index=True, nullable=False)
    target_id = Column(String, nullable=True)
    status = Column(_enum_column(JobItemStatus), index=True, nullable=False, default=JobItemStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    asset_key = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    job = relationship("Job", back_populates="items")
