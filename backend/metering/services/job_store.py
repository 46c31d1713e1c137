from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.orm import selectinload, sessionmaker

from metering.core.errors import Forbidden, NotFound
from metering.models.job import ACTIVE_JOB_STATUSES, Job, JobItem, JobItemStatus, JobStatus, JobType
from metering.services.costs import utcnow

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


class JobStore:
    """Persistence for Job and JobItem records.

    Status changes are conditional UPDATEs keyed on the current status and
    aggregate counters are incremented in SQL, so concurrent item workers
    never overwrite each other's progress.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def create_job(
        self,
        *,
        job_id: str,
        owner_id: str,
        job_type: JobType,
        targets: list[str | None],
        credits_per_item: int,
        credits_reserved: int,
        project_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Job:
        if not targets:
            raise ValueError("a job needs at least one item")
        with self._session_factory() as db:
            try:
                job = Job(
                    id=job_id,
                    owner_id=owner_id,
                    project_id=project_id,
                    type=job_type,
                    status=JobStatus.PENDING,
                    total_items=len(targets),
                    completed_items=0,
                    failed_items=0,
                    credits_per_item=credits_per_item,
                    credits_reserved=credits_reserved,
                    credits_spent=0,
                    credits_refunded=0,
                    refund_issued=False,
                    job_metadata=(metadata or {}),
                )
                db.add(job)
                db.add_all([JobItem(job_id=job_id, target_id=t, status=JobItemStatus.PENDING, attempts=0) for t in targets])
                db.commit()
            except Exception:
                db.rollback()
                raise
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Job | None:
        with self._session_factory() as db:
            return db.query(Job).options(selectinload(Job.items)).filter(Job.id == job_id).first()

    def get_job_for_owner(self, job_id: str, owner_id: str) -> Job | NotFound | Forbidden:
        job = self.get_job(job_id)
        if job is None:
            return NotFound("Job")
        if job.owner_id != owner_id:
            return Forbidden("Access to this job is forbidden")
        return job

    def list_jobs(self, owner_id: str, limit: int = 25, offset: int = 0) -> list[Job]:
        limit = max(1, min(int(limit or 25), 100))
        offset = max(0, int(offset or 0))
        with self._session_factory() as db:
            return (
                db.query(Job)
                .filter(Job.owner_id == owner_id)
                .order_by(Job.created_at.desc(), Job.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )

    def get_item(self, item_id: int) -> JobItem | None:
        with self._session_factory() as db:
            return db.get(JobItem, item_id)

    def pending_items(self, job_id: str) -> list[JobItem]:
        with self._session_factory() as db:
            return (
                db.query(JobItem)
                .filter(JobItem.job_id == job_id, JobItem.status == JobItemStatus.PENDING)
                .order_by(JobItem.id.asc())
                .all()
            )

    # -- job transitions ------------------------------------------------------

    def mark_processing(self, job_id: str) -> bool:
        return self._execute_rowcount(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PENDING)
            .values(status=JobStatus.PROCESSING, started_at=utcnow())
        ) == 1

    def transition_terminal(
        self,
        job_id: str,
        status: JobStatus,
        *,
        from_statuses: Iterable[JobStatus] = ACTIVE_JOB_STATUSES,
        error_message: str | None = None,
    ) -> bool:
        """Move a job into a terminal status if it is still in ``from_statuses``.

        Returns True only for the single caller whose update took effect.
        """
        values: dict[str, Any] = {"status": status, "completed_at": utcnow()}
        if error_message is not None:
            values["error_message"] = error_message
        won = self._execute_rowcount(
            update(Job).where(Job.id == job_id, Job.status.in_(list(from_statuses))).values(**values)
        ) == 1
        if won:
            logger.info("jobs.transition job=%s status=%s", job_id, status.value)
        return won

    # -- item transitions -----------------------------------------------------

    def claim_item(self, item_id: int) -> bool:
        return self._execute_rowcount(
            update(JobItem)
            .where(JobItem.id == item_id, JobItem.status == JobItemStatus.PENDING)
            .values(status=JobItemStatus.PROCESSING, started_at=utcnow())
        ) == 1

    def record_item_result(
        self,
        item_id: int,
        *,
        success: bool,
        attempts: int,
        asset_key: str | None = None,
        error_message: str | None = None,
    ) -> tuple[str | None, bool]:
        """Persist a terminal item outcome and bump the job counters.

        Returns ``(job_id, counted)``. ``job_id`` is None when the item was
        not in ``processing`` (already settled). ``counted`` is False when the
        job had already left ``processing``; the item row is still updated so
        late results stay auditable.
        """
        item_status = JobItemStatus.COMPLETED if success else JobItemStatus.FAILED
        with self._session_factory() as db:
            try:
                moved = db.execute(
                    update(JobItem)
                    .where(JobItem.id == item_id, JobItem.status == JobItemStatus.PROCESSING)
                    .values(
                        status=item_status,
                        attempts=attempts,
                        asset_key=asset_key,
                        error_message=error_message,
                        completed_at=utcnow(),
                    ),
                    execution_options=_NO_SYNC,
                )
                if moved.rowcount != 1:
                    db.rollback()
                    return None, False

                job_id = db.query(JobItem.job_id).filter(JobItem.id == item_id).scalar()
                if success:
                    spent = Job.credits_spent + Job.credits_per_item
                    counters = {
                        "completed_items": Job.completed_items + 1,
                        "credits_spent": case((spent > Job.credits_reserved, Job.credits_reserved), else_=spent),
                    }
                else:
                    counters = {"failed_items": Job.failed_items + 1}
                counted = db.execute(
                    update(Job).where(Job.id == job_id, Job.status == JobStatus.PROCESSING).values(**counters),
                    execution_options=_NO_SYNC,
                ).rowcount == 1
                db.commit()
            except Exception:
                db.rollback()
                raise
        return job_id, counted

    def fail_unfinished_items(self, job_id: str, error_message: str) -> int:
        """Fail every pending/processing item of a processing job; returns how many.

        Items of a job that already left ``processing`` are left untouched.
        """
        still_processing = select(Job.id).where(Job.id == job_id, Job.status == JobStatus.PROCESSING)
        with self._session_factory() as db:
            try:
                failed = db.execute(
                    update(JobItem)
                    .where(
                        JobItem.job_id == job_id,
                        JobItem.job_id.in_(still_processing),
                        JobItem.status.in_([JobItemStatus.PENDING, JobItemStatus.PROCESSING]),
                    )
                    .values(status=JobItemStatus.FAILED, error_message=error_message, completed_at=utcnow()),
                    execution_options=_NO_SYNC,
                ).rowcount
                if failed:
                    db.execute(
                        update(Job)
                        .where(Job.id == job_id, Job.status == JobStatus.PROCESSING)
                        .values(failed_items=Job.failed_items + failed),
                        execution_options=_NO_SYNC,
                    )
                db.commit()
            except Exception:
                db.rollback()
                raise
        return int(failed or 0)

    # -- queries used by maintenance -----------------------------------------

    def stuck_job_ids(self, older_than: datetime) -> list[str]:
        """Processing jobs started before ``older_than`` and pending jobs created before it."""
        with self._session_factory() as db:
            rows = (
                db.query(Job.id)
                .filter(
                    or_(
                        and_(Job.status == JobStatus.PROCESSING, Job.started_at < older_than),
                        and_(Job.status == JobStatus.PENDING, Job.created_at < older_than),
                    )
                )
                .order_by(Job.created_at.asc(), Job.id.asc())
                .all()
            )
        return [r[0] for r in rows]

    def unsettled_terminal_job_ids(self) -> list[str]:
        with self._session_factory() as db:
            rows = (
                db.query(Job.id)
                .filter(
                    Job.status.in_([JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED]),
                    Job.refund_issued.is_(False),
                )
                .all()
            )
        return [r[0] for r in rows]

    def _execute_rowcount(self, stmt) -> int:
        with self._session_factory() as db:
            try:
                result = db.execute(stmt, execution_options=_NO_SYNC)
                db.commit()
            except Exception:
                db.rollback()
                raise
        return int(result.rowcount or 0)
