from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from metering.core.settings import Settings
from metering.models.credit_account import CreditAccount
from metering.models.credit_transaction import TransactionKind
from metering.services.costs import PROCESSOR_BILLED_PLANS, next_reset_at, plan_credits, utcnow
from metering.services.job_state import JobStateMachine
from metering.services.job_store import JobStore
from metering.services.ledger import CreditLedger

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    reaped: list[str] = field(default_factory=list)
    resettled: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RenewalReport:
    renewed: list[str]
    credits_granted: int


class MaintenanceService:
    """Periodic sweeps: stuck-job reaper, settlement retry, monthly renewal."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        store: JobStore,
        state: JobStateMachine,
        ledger: CreditLedger,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._state = state
        self._ledger = ledger
        self._settings = settings

    def reap_stuck_jobs(self, now: datetime | None = None, timeout_minutes: int | None = None) -> SweepReport:
        now = now or utcnow()
        minutes = int(timeout_minutes if timeout_minutes is not None else self._settings.job_stuck_timeout_minutes)
        cutoff = now - timedelta(minutes=minutes)
        reason = f"timed out after {minutes} minutes"

        report = SweepReport()
        for job_id in self._store.stuck_job_ids(cutoff):
            try:
                if self._state.reap(job_id, reason):
                    report.reaped.append(job_id)
            except Exception:
                logger.exception("maintenance.reap.failed job=%s", job_id)
                report.failed.append(job_id)

        self.settle_pending_refunds(report)
        logger.info(
            "maintenance.reap.done reaped=%s resettled=%s failed=%s",
            len(report.reaped),
            len(report.resettled),
            len(report.failed),
        )
        return report

    def settle_pending_refunds(self, report: SweepReport | None = None) -> SweepReport:
        """Retry settlement for terminal jobs whose refund never landed."""
        report = report if report is not None else SweepReport()
        for job_id in self._store.unsettled_terminal_job_ids():
            try:
                self._state.resettle(job_id)
                report.resettled.append(job_id)
            except Exception:
                logger.exception("maintenance.resettle.failed job=%s", job_id)
                report.failed.append(job_id)
        return report

    def renew_due_accounts(self, now: datetime | None = None) -> RenewalReport:
        """Grant the monthly allowance to locally renewed plans that are due.

        Paid plans are renewed by the payment processor through billing
        events and are skipped here. The grant is additive; unspent credits
        carry over.
        """
        now = now or utcnow()
        with self._session_factory() as db:
            due = (
                db.query(CreditAccount.account_id, CreditAccount.plan_key)
                .filter(
                    CreditAccount.next_reset_at.isnot(None),
                    CreditAccount.next_reset_at <= now,
                    CreditAccount.plan_key.notin_(sorted(PROCESSOR_BILLED_PLANS)),
                )
                .all()
            )

        renewed: list[str] = []
        total = 0
        for account_id, plan_key in due:
            amount = plan_credits(self._settings, plan_key)
            with self._session_factory() as db:
                try:
                    # Claiming the reset date first makes a concurrent sweep a no-op.
                    claimed = db.execute(
                        update(CreditAccount)
                        .where(CreditAccount.account_id == account_id, CreditAccount.next_reset_at <= now)
                        .values(next_reset_at=next_reset_at(now), updated_at=utcnow()),
                        execution_options={"synchronize_session": False},
                    ).rowcount
                    if claimed != 1:
                        db.rollback()
                        continue
                    self._ledger.grant(
                        account_id,
                        amount,
                        f"{plan_key} plan monthly renewal",
                        kind=TransactionKind.RENEWAL,
                        external_ref=f"renewal:{now:%Y-%m}",
                        db=db,
                    )
                    db.commit()
                except Exception:
                    db.rollback()
                    logger.exception("maintenance.renewal.failed account=%s", account_id)
                    continue
            renewed.append(account_id)
            total += amount

        logger.info("maintenance.renewal.done accounts=%s credits=%s", len(renewed), total)
        return RenewalReport(renewed=renewed, credits_granted=total)
