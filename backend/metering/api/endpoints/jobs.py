from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks
from typing import List
import logging

from metering.core.errors import (
    Conflict,
    ExecutionFailure,
    Forbidden,
    InsufficientCredits,
    JobCreationFailed,
    NotFound,
)
from metering.core.security import CurrentAccount, get_current_account
from metering.core.services import Services, get_services
from metering.schemas.job import JobCancelled, JobCreate, JobDetailResponse, JobResponse, JobStarted

logger = logging.getLogger(__name__)

router = APIRouter()


def raise_for_error(result) -> None:
    if isinstance(result, InsufficientCredits):
        raise HTTPException(
            status_code=402,
            detail={
                "code": result.code,
                "message": "Insufficient credits",
                "required": result.required,
                "available": result.available,
                "shortfall": result.shortfall,
            },
        )
    if isinstance(result, NotFound):
        raise HTTPException(status_code=404, detail=result.message)
    if isinstance(result, Forbidden):
        raise HTTPException(status_code=403, detail=result.message)
    if isinstance(result, Conflict):
        raise HTTPException(status_code=409, detail=result.message)


async def _check_prompt_safety(services: Services, prompt: str, audience: str | None) -> None:
    try:
        verdict = await services.provider.check_safety(prompt, audience)
    except ExecutionFailure as exc:
        logger.warning("jobs.safety_check.unavailable error=%s", exc)
        raise HTTPException(status_code=503, detail="Content safety check unavailable")
    if not verdict.safe:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "unsafe_content",
                "message": "Prompt was rejected by the content safety check",
                "blocked_terms": verdict.blocked_terms,
                "suggestions": verdict.suggestions,
            },
        )


@router.post("/jobs", response_model=JobStarted, status_code=202)
async def create_job(
    job_in: JobCreate,
    background_tasks: BackgroundTasks,
    account: CurrentAccount = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    metadata = dict(job_in.metadata or {})
    prompt = (job_in.prompt or "").strip()
    if prompt:
        # Rejected prompts never reach the ledger.
        await _check_prompt_safety(services, prompt, job_in.audience)
        metadata["prompt"] = prompt
    if job_in.audience:
        metadata["audience"] = job_in.audience

    try:
        result = services.dispatcher.start_job(
            account.id,
            job_in.type,
            job_in.items,
            project_id=job_in.project_id,
            metadata=metadata,
            enqueue=lambda job_id: background_tasks.add_task(services.runner.run_job, job_id),
        )
    except JobCreationFailed:
        raise HTTPException(status_code=503, detail="Could not create job; no credits were charged")

    raise_for_error(result)
    return JobStarted(
        job_id=result.job_id,
        status=result.status,
        credits_reserved=result.credits_reserved,
        total_items=result.total_items,
    )


@router.get("/jobs", response_model=List[JobResponse])
async def list_jobs(
    limit: int = 25,
    offset: int = 0,
    account: CurrentAccount = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    return services.dispatcher.list_jobs(account.id, limit=limit, offset=offset)


@router.get("/jobs/{job_id}", response_model=JobDetailResponse)
async def get_job(
    job_id: str,
    account: CurrentAccount = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    job = services.dispatcher.get_job_status(job_id, account.id)
    raise_for_error(job)
    return job


@router.post("/jobs/{job_id}/cancel", response_model=JobCancelled)
async def cancel_job(
    job_id: str,
    account: CurrentAccount = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    result = services.dispatcher.cancel_job(job_id, account.id)
    raise_for_error(result)
    return JobCancelled(job_id=result.job_id, credits_refunded=result.credits_refunded, new_balance=result.new_balance)
