from pydantic import BaseModel, Field
from typing import Dict, List, Any, Optional
from datetime import datetime

from metering.models.job import JobItemStatus, JobStatus, JobType


class JobCreate(BaseModel):
    type: JobType
    items: List[Optional[str]] = Field(min_length=1, max_length=200)
    project_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    prompt: Optional[str] = None
    audience: Optional[str] = None


class JobStarted(BaseModel):
    job_id: str
    status: JobStatus
    credits_reserved: int
    total_items: int


class JobItemResponse(BaseModel):
    id: int
    target_id: Optional[str] = None
    status: JobItemStatus
    attempts: int
    asset_key: Optional[str] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobResponse(BaseModel):
    id: str
    type: JobType
    status: JobStatus
    project_id: Optional[str] = None
    total_items: int
    completed_items: int
    failed_items: int
    credits_reserved: int
    credits_spent: int
    credits_refunded: int
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobDetailResponse(JobResponse):
    items: List[JobItemResponse] = []


class JobCancelled(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.CANCELLED
    credits_refunded: int
    new_balance: int
