from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from metering.core.errors import Conflict, Forbidden, InsufficientCredits, JobCreationFailed, NotFound
from metering.core.settings import Settings
from metering.models.job import Job, JobStatus, JobType
from metering.services.costs import item_cost
from metering.services.job_state import CancelledJob, JobStateMachine
from metering.services.job_store import JobStore
from metering.services.ledger import CreditLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartedJob:
    job_id: str
    status: JobStatus
    credits_reserved: int
    total_items: int


@dataclass(frozen=True)
class BalanceSummary:
    balance: int
    plan_key: str
    next_reset_at: datetime | None


class JobDispatcher:
    """Entry point for starting, inspecting and cancelling metered jobs.

    ``start_job`` is a small saga: reserve credits, persist the job, then
    move it to processing. If persisting fails the reservation is released;
    if the job cannot be started it is abandoned with a full refund. No
    credits are ever held for a job that will not run.
    """

    def __init__(self, *, ledger: CreditLedger, store: JobStore, state: JobStateMachine, settings: Settings) -> None:
        self._ledger = ledger
        self._store = store
        self._state = state
        self._settings = settings

    def start_job(
        self,
        account_id: str,
        job_type: JobType | str,
        targets: list[str | None],
        *,
        project_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        enqueue: Callable[[str], None] | None = None,
    ) -> StartedJob | InsufficientCredits:
        job_type = JobType(job_type)
        targets = list(targets or [])
        if not targets:
            raise ValueError("a job needs at least one item")

        per_item = item_cost(self._settings, job_type, (metadata or {}).get("mode"))
        required = per_item * len(targets)
        job_id = str(uuid4())

        reservation = self._ledger.reserve(account_id, required, job_id)
        if isinstance(reservation, InsufficientCredits):
            return reservation

        try:
            self._store.create_job(
                job_id=job_id,
                owner_id=account_id,
                job_type=job_type,
                targets=targets,
                credits_per_item=per_item,
                credits_reserved=required,
                project_id=project_id,
                metadata=metadata,
            )
        except Exception as exc:
            logger.exception("dispatcher.create_job.failed account=%s job=%s", account_id, job_id)
            try:
                self._ledger.release_reservation(account_id, job_id, required, "job creation failed")
            except Exception:
                logger.exception(
                    "dispatcher.compensation.failed account=%s job=%s amount=%s", account_id, job_id, required
                )
            raise JobCreationFailed(f"could not create job {job_id}: {exc}") from exc

        try:
            started = self._state.start(job_id)
        except Exception as exc:
            logger.exception("dispatcher.start.failed account=%s job=%s", account_id, job_id)
            try:
                self._state.abandon(job_id, "job could not be started")
            except Exception:
                # Left pending; the stuck-job reaper refunds it later.
                logger.exception(
                    "dispatcher.compensation.failed account=%s job=%s amount=%s", account_id, job_id, required
                )
            raise JobCreationFailed(f"could not start job {job_id}: {exc}") from exc

        status = JobStatus.PROCESSING
        if started:
            if enqueue is not None:
                enqueue(job_id)
        else:
            job = self._store.get_job(job_id)
            status = job.status if job is not None else JobStatus.PENDING
            logger.warning("dispatcher.start.lost account=%s job=%s status=%s", account_id, job_id, status.value)

        logger.info(
            "dispatcher.start.ok account=%s job=%s type=%s items=%s reserved=%s",
            account_id,
            job_id,
            job_type.value,
            len(targets),
            required,
        )
        return StartedJob(
            job_id=job_id,
            status=status,
            credits_reserved=required,
            total_items=len(targets),
        )

    def get_job_status(self, job_id: str, account_id: str) -> Job | NotFound | Forbidden:
        return self._store.get_job_for_owner(job_id, account_id)

    def list_jobs(self, account_id: str, limit: int = 25, offset: int = 0) -> list[Job]:
        return self._store.list_jobs(account_id, limit=limit, offset=offset)

    def cancel_job(self, job_id: str, account_id: str) -> CancelledJob | Conflict | NotFound | Forbidden:
        return self._state.cancel(job_id, account_id)

    def get_balance(self, account_id: str) -> BalanceSummary:
        acct = self._ledger.get_account(account_id)
        return BalanceSummary(
            balance=int(acct.balance or 0),
            plan_key=str(acct.plan_key or "free"),
            next_reset_at=acct.next_reset_at,
        )
