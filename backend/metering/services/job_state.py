from __future__ import annotations

import logging
from dataclasses import dataclass

from metering.core.errors import Conflict, Forbidden, NotFound
from metering.models.job import Job, JobStatus
from metering.services.job_store import JobStore
from metering.services.ledger import CreditLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CancelledJob:
    job_id: str
    credits_refunded: int
    new_balance: int


@dataclass(frozen=True)
class ItemReport:
    job_id: str | None
    counted: bool
    finalized_status: JobStatus | None = None


def outcome_status(job: Job) -> JobStatus:
    """Partial success still completes; a job fails only when nothing completed."""
    if int(job.completed_items or 0) > 0:
        return JobStatus.COMPLETED
    return JobStatus.FAILED


class JobStateMachine:
    """Drives job transitions and the settlement that follows them.

    Every path into a terminal status (last item settled, cancellation,
    reaper) goes through ``JobStore.transition_terminal``, which only one
    caller can win. The winner alone talks to the ledger.
    """

    def __init__(self, store: JobStore, ledger: CreditLedger) -> None:
        self._store = store
        self._ledger = ledger

    def start(self, job_id: str) -> bool:
        started = self._store.mark_processing(job_id)
        if started:
            logger.info("jobs.start job=%s", job_id)
        return started

    def record_item_success(self, item_id: int, *, asset_key: str | None, attempts: int) -> ItemReport:
        job_id, counted = self._store.record_item_result(item_id, success=True, attempts=attempts, asset_key=asset_key)
        return self._after_item(item_id, job_id, counted)

    def record_item_failure(self, item_id: int, *, error_message: str, attempts: int) -> ItemReport:
        job_id, counted = self._store.record_item_result(
            item_id, success=False, attempts=attempts, error_message=error_message
        )
        return self._after_item(item_id, job_id, counted)

    def finalize_if_done(self, job_id: str) -> JobStatus | None:
        job = self._store.get_job(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return None
        if int(job.completed_items) + int(job.failed_items) < int(job.total_items):
            return None

        status = outcome_status(job)
        error = None if status == JobStatus.COMPLETED else "all items failed"
        if not self._store.transition_terminal(job_id, status, from_statuses={JobStatus.PROCESSING}, error_message=error):
            return None
        self._settle(job_id)
        return status

    def cancel(self, job_id: str, account_id: str) -> CancelledJob | Conflict | NotFound | Forbidden:
        job = self._store.get_job_for_owner(job_id, account_id)
        if isinstance(job, (NotFound, Forbidden)):
            return job

        if not self._store.transition_terminal(job_id, JobStatus.CANCELLED, error_message="cancelled by user"):
            current = self._store.get_job(job_id)
            status = current.status.value if current is not None else "unknown"
            return Conflict(f"Cannot cancel job with status '{status}'")

        # Counters are frozen once the job left processing, so this is the
        # spent amount at the instant of cancellation.
        job = self._store.get_job(job_id)
        refundable = int(job.credits_reserved) - int(job.credits_spent)
        refund = self._ledger.refund(job_id, refundable, "Job cancelled by user")
        logger.info("jobs.cancel job=%s refunded=%s", job_id, refund.amount_refunded)
        return CancelledJob(job_id=job_id, credits_refunded=refund.amount_refunded, new_balance=refund.new_balance)

    def abandon(self, job_id: str, reason: str) -> bool:
        """Fail a job that never left pending and return its whole reservation."""
        if not self._store.transition_terminal(
            job_id, JobStatus.FAILED, from_statuses={JobStatus.PENDING}, error_message=reason
        ):
            return False
        logger.warning("jobs.abandoned job=%s reason=%s", job_id, reason)
        self._settle(job_id)
        return True

    def reap(self, job_id: str, reason: str) -> bool:
        """Finish a stuck job and settle what it actually spent.

        A job still pending was never handed to a worker and is abandoned.
        Otherwise unfinished items are failed with ``reason``; the job then
        ends like any other: completed if anything completed, failed otherwise.
        """
        current = self._store.get_job(job_id)
        if current is None:
            return False
        if current.status == JobStatus.PENDING:
            return self.abandon(job_id, reason)
        failed = self._store.fail_unfinished_items(job_id, reason)
        job = self._store.get_job(job_id)
        status = outcome_status(job)
        if not self._store.transition_terminal(
            job_id, status, from_statuses={JobStatus.PROCESSING}, error_message=reason
        ):
            return False
        logger.warning("jobs.reaped job=%s status=%s unfinished_items=%s", job_id, status.value, failed)
        self._settle(job_id)
        return True

    def resettle(self, job_id: str) -> None:
        """Finish settlement for a terminal job whose refund was never recorded."""
        job = self._store.get_job(job_id)
        if job is None or not job.is_terminal or job.refund_issued:
            return
        if job.status == JobStatus.CANCELLED:
            self._ledger.refund(job_id, int(job.credits_reserved) - int(job.credits_spent), "Job cancelled by user")
        else:
            self._ledger.settle(job_id, int(job.credits_spent))

    def _after_item(self, item_id: int, job_id: str | None, counted: bool) -> ItemReport:
        if job_id is None:
            logger.warning("jobs.item.already_settled item=%s", item_id)
            return ItemReport(job_id=None, counted=False)
        if not counted:
            logger.warning("jobs.item.late_result job=%s item=%s", job_id, item_id)
            return ItemReport(job_id=job_id, counted=False)
        return ItemReport(job_id=job_id, counted=True, finalized_status=self.finalize_if_done(job_id))

    def _settle(self, job_id: str) -> None:
        job = self._store.get_job(job_id)
        try:
            self._ledger.settle(job_id, int(job.credits_spent))
        except Exception:
            # The job stays terminal with refund_issued unset; the
            # maintenance sweep picks it up through resettle().
            logger.exception("jobs.settle.failed job=%s", job_id)
            raise
