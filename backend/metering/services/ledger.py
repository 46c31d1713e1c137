from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from metering.core.errors import InsufficientCredits, LedgerInvariantViolation
from metering.core.settings import Settings
from metering.models.credit_account import CreditAccount
from metering.models.credit_transaction import CreditTransaction, TransactionKind
from metering.models.job import Job
from metering.services.costs import next_reset_at, plan_credits, utcnow

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}

GRANT_KINDS = frozenset({TransactionKind.GRANT, TransactionKind.RENEWAL, TransactionKind.PACK_PURCHASE})


@dataclass(frozen=True)
class CreditCheck:
    sufficient: bool
    available: int
    required: int
    shortfall: int


@dataclass(frozen=True)
class Reservation:
    account_id: str
    job_id: str
    amount: int
    new_balance: int


@dataclass(frozen=True)
class RefundResult:
    job_id: str
    amount_refunded: int
    new_balance: int
    already_refunded: bool = False


@dataclass(frozen=True)
class Settlement:
    job_id: str
    reserved: int
    spent: int
    refund: RefundResult


class CreditLedger:
    """Owns per-account balances and the append-only transaction log.

    Every balance mutation is a single conditional UPDATE against the account
    row plus the matching transaction row, committed together. The refund
    side of a job is guarded by ``jobs.refund_issued`` so it is applied once.
    """

    def __init__(self, session_factory: sessionmaker, settings: Settings) -> None:
        self._session_factory = session_factory
        self._settings = settings

    # -- accounts -------------------------------------------------------

    def ensure_account(self, account_id: str) -> CreditAccount:
        account_id = (account_id or "").strip()
        if not account_id:
            raise ValueError("account_id is required")
        with self._session_factory() as db:
            acct = db.get(CreditAccount, account_id)
            if acct is not None:
                return acct

            signup = plan_credits(self._settings, "free")
            acct = CreditAccount(
                account_id=account_id,
                balance=signup,
                plan_key="free",
                plan_status="active",
                plan_credits=signup,
                next_reset_at=next_reset_at(),
            )
            db.add(acct)
            if signup > 0:
                db.add(
                    CreditTransaction(
                        account_id=account_id,
                        kind=TransactionKind.GRANT,
                        amount=signup,
                        delta=signup,
                        description="free plan signup grant",
                    )
                )
            try:
                db.commit()
            except IntegrityError:
                # Another request provisioned the account first.
                db.rollback()
                acct = db.get(CreditAccount, account_id)
                if acct is None:
                    raise
                return acct
            logger.info("ledger.account.created account=%s balance=%s", account_id, signup)
            return acct

    def get_account(self, account_id: str) -> CreditAccount:
        return self.ensure_account(account_id)

    def get_balance(self, account_id: str) -> int:
        self.ensure_account(account_id)
        with self._session_factory() as db:
            return self._balance(db, account_id)

    def check_sufficient(self, account_id: str, amount: int) -> CreditCheck:
        amount = _non_negative(amount)
        available = self.get_balance(account_id)
        sufficient = available >= amount
        return CreditCheck(
            sufficient=sufficient,
            available=available,
            required=amount,
            shortfall=0 if sufficient else amount - available,
        )

    def set_plan(
        self,
        account_id: str,
        *,
        plan_key: str,
        plan_status: str | None = None,
        reset_at: datetime | None = None,
        provider_customer_id: str | None = None,
        provider_subscription_id: str | None = None,
        clear_subscription: bool = False,
        db: Session | None = None,
    ) -> None:
        """Update plan metadata. Never touches the balance."""
        if db is None:
            self.ensure_account(account_id)
        values: dict = {
            "plan_key": plan_key,
            "plan_credits": plan_credits(self._settings, plan_key),
            "updated_at": utcnow(),
        }
        if plan_status is not None:
            values["plan_status"] = plan_status
        if reset_at is not None:
            values["next_reset_at"] = reset_at
        if provider_customer_id:
            values["provider_customer_id"] = provider_customer_id
        if provider_subscription_id:
            values["provider_subscription_id"] = provider_subscription_id
        if clear_subscription:
            values["provider_subscription_id"] = None

        stmt = (
            update(CreditAccount)
            .execution_options(**_NO_SYNC)
            .where(CreditAccount.account_id == account_id)
            .values(**values)
        )
        if db is not None:
            db.execute(stmt)
            return
        with self._session_factory() as own:
            try:
                own.execute(stmt)
                own.commit()
            except Exception:
                own.rollback()
                raise

    # -- mutations --------------------------------------------------------

    def reserve(self, account_id: str, amount: int, job_id: str) -> Reservation | InsufficientCredits:
        amount = _non_negative(amount)
        self.ensure_account(account_id)
        with self._session_factory() as db:
            try:
                result = db.execute(
                    update(CreditAccount)
                    .execution_options(**_NO_SYNC)
                    .where(CreditAccount.account_id == account_id, CreditAccount.balance >= amount)
                    .values(balance=CreditAccount.balance - amount, updated_at=utcnow())
                )
                if result.rowcount != 1:
                    db.rollback()
                    available = self._balance(db, account_id)
                    logger.info(
                        "ledger.reserve.insufficient account=%s job=%s required=%s available=%s",
                        account_id,
                        job_id,
                        amount,
                        available,
                    )
                    return InsufficientCredits(
                        required=amount,
                        available=available,
                        shortfall=max(0, amount - available),
                    )

                db.add(
                    CreditTransaction(
                        account_id=account_id,
                        kind=TransactionKind.RESERVE,
                        amount=amount,
                        delta=-amount,
                        job_id=job_id,
                        description=f"reserved for job {job_id}",
                    )
                )
                db.flush()
                new_balance = self._balance(db, account_id)
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                logger.error("ledger.reserve.invariant_violation account=%s job=%s amount=%s", account_id, job_id, amount)
                raise LedgerInvariantViolation(f"reserve would drive balance negative: {exc}") from exc
            except Exception:
                db.rollback()
                raise

        logger.info("ledger.reserve.ok account=%s job=%s amount=%s balance=%s", account_id, job_id, amount, new_balance)
        return Reservation(account_id=account_id, job_id=job_id, amount=amount, new_balance=new_balance)

    def settle(self, job_id: str, spent_amount: int) -> Settlement:
        """Reclassify a job's reservation into spent and refunded credits.

        Records an informational ``deduct`` (delta 0) for ``spent_amount`` and
        refunds ``reserved - spent_amount``. A second call for the same job is
        a no-op that reports ``already_refunded``.
        """
        spent_amount = _non_negative(spent_amount)
        with self._session_factory() as db:
            try:
                job = self._job(db, job_id)
                reserved = int(job.credits_reserved or 0)
                if spent_amount > reserved:
                    logger.error(
                        "ledger.settle.invariant_violation job=%s spent=%s reserved=%s", job_id, spent_amount, reserved
                    )
                    raise LedgerInvariantViolation(f"job {job_id} spent {spent_amount} exceeds reserved {reserved}")

                refund_amount = reserved - spent_amount
                if not self._claim_refund(db, job_id, refund_amount):
                    db.rollback()
                    logger.info("ledger.settle.already_settled job=%s", job_id)
                    return Settlement(
                        job_id=job_id,
                        reserved=reserved,
                        spent=spent_amount,
                        refund=RefundResult(
                            job_id=job_id,
                            amount_refunded=0,
                            new_balance=self._balance(db, job.owner_id),
                            already_refunded=True,
                        ),
                    )

                db.add(
                    CreditTransaction(
                        account_id=job.owner_id,
                        kind=TransactionKind.DEDUCT,
                        amount=spent_amount,
                        delta=0,
                        job_id=job_id,
                        description=f"spent on job {job_id}",
                    )
                )
                new_balance = self._apply_refund(db, job.owner_id, job_id, refund_amount, "unused reservation")
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.info(
            "ledger.settle.ok job=%s reserved=%s spent=%s refunded=%s", job_id, reserved, spent_amount, refund_amount
        )
        return Settlement(
            job_id=job_id,
            reserved=reserved,
            spent=spent_amount,
            refund=RefundResult(job_id=job_id, amount_refunded=refund_amount, new_balance=new_balance),
        )

    def refund(self, job_id: str, amount: int, reason: str) -> RefundResult:
        """Return ``amount`` of a job's reservation to its owner, once per job."""
        amount = _non_negative(amount)
        with self._session_factory() as db:
            try:
                job = self._job(db, job_id)
                refundable = int(job.credits_reserved or 0) - int(job.credits_spent or 0)
                if amount > refundable:
                    logger.error("ledger.refund.invariant_violation job=%s amount=%s refundable=%s", job_id, amount, refundable)
                    raise LedgerInvariantViolation(f"job {job_id} refund {amount} exceeds refundable {refundable}")

                if not self._claim_refund(db, job_id, amount):
                    db.rollback()
                    logger.info("ledger.refund.already_refunded job=%s", job_id)
                    return RefundResult(
                        job_id=job_id,
                        amount_refunded=0,
                        new_balance=self._balance(db, job.owner_id),
                        already_refunded=True,
                    )

                new_balance = self._apply_refund(db, job.owner_id, job_id, amount, reason)
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.info("ledger.refund.ok job=%s amount=%s reason=%s", job_id, amount, reason)
        return RefundResult(job_id=job_id, amount_refunded=amount, new_balance=new_balance)

    def release_reservation(self, account_id: str, job_id: str, amount: int, reason: str) -> RefundResult:
        """Compensate a reservation whose job record was never created."""
        amount = _non_negative(amount)
        with self._session_factory() as db:
            try:
                already = (
                    db.query(CreditTransaction.id)
                    .filter(CreditTransaction.job_id == job_id, CreditTransaction.kind == TransactionKind.REFUND)
                    .first()
                )
                if already is not None or amount == 0:
                    return RefundResult(
                        job_id=job_id,
                        amount_refunded=0,
                        new_balance=self._balance(db, account_id),
                        already_refunded=already is not None,
                    )
                new_balance = self._apply_refund(db, account_id, job_id, amount, reason)
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.warning("ledger.reservation.released account=%s job=%s amount=%s reason=%s", account_id, job_id, amount, reason)
        return RefundResult(job_id=job_id, amount_refunded=amount, new_balance=new_balance)

    def grant(
        self,
        account_id: str,
        amount: int,
        reason: str,
        *,
        kind: TransactionKind = TransactionKind.GRANT,
        external_ref: str | None = None,
        db: Session | None = None,
    ) -> int:
        """Add credits to an account. Always additive.

        With ``db`` the grant joins the caller's transaction and is committed
        by the caller; the account must already exist. Otherwise the account
        is provisioned if needed and the grant commits on its own.
        """
        if kind not in GRANT_KINDS:
            raise ValueError(f"{kind.value} is not a grant kind")
        amount = _non_negative(amount)
        if db is not None:
            return self._apply_grant(db, account_id, amount, reason, kind, external_ref)

        self.ensure_account(account_id)
        with self._session_factory() as own:
            try:
                new_balance = self._apply_grant(own, account_id, amount, reason, kind, external_ref)
                own.commit()
            except Exception:
                own.rollback()
                raise
        return new_balance

    # -- reads --------------------------------------------------------------

    def list_transactions(self, account_id: str, limit: int = 20) -> list[CreditTransaction]:
        limit = max(1, min(int(limit or 20), 50))
        with self._session_factory() as db:
            return (
                db.query(CreditTransaction)
                .filter(CreditTransaction.account_id == account_id)
                .order_by(CreditTransaction.id.desc())
                .limit(limit)
                .all()
            )

    def transaction_total(self, account_id: str) -> int:
        with self._session_factory() as db:
            total = (
                db.query(func.coalesce(func.sum(CreditTransaction.delta), 0))
                .filter(CreditTransaction.account_id == account_id)
                .scalar()
            )
        return int(total or 0)

    def verify_conservation(self, account_id: str) -> int:
        """Check that the cached balance equals the sum of all deltas."""
        balance = self.get_balance(account_id)
        total = self.transaction_total(account_id)
        if balance != total or balance < 0:
            logger.error("ledger.conservation.violation account=%s balance=%s log_total=%s", account_id, balance, total)
            raise LedgerInvariantViolation(f"account {account_id} balance {balance} != transaction total {total}")
        return balance

    # -- internals ------------------------------------------------------------

    def _balance(self, db: Session, account_id: str) -> int:
        value = db.query(CreditAccount.balance).filter(CreditAccount.account_id == account_id).scalar()
        return int(value or 0)

    def _job(self, db: Session, job_id: str) -> Job:
        job = db.get(Job, job_id)
        if job is None:
            raise LookupError(f"job {job_id} not found")
        return job

    def _claim_refund(self, db: Session, job_id: str, amount: int) -> bool:
        result = db.execute(
            update(Job)
            .execution_options(**_NO_SYNC)
            .where(Job.id == job_id, Job.refund_issued.is_(False))
            .values(refund_issued=True, credits_refunded=amount)
        )
        return result.rowcount == 1

    def _apply_refund(self, db: Session, account_id: str, job_id: str, amount: int, reason: str) -> int:
        if amount > 0:
            db.execute(
                update(CreditAccount)
                .execution_options(**_NO_SYNC)
                .where(CreditAccount.account_id == account_id)
                .values(balance=CreditAccount.balance + amount, updated_at=utcnow())
            )
            db.add(
                CreditTransaction(
                    account_id=account_id,
                    kind=TransactionKind.REFUND,
                    amount=amount,
                    delta=amount,
                    job_id=job_id,
                    description=reason,
                )
            )
            db.flush()
        return self._balance(db, account_id)

    def _apply_grant(
        self,
        db: Session,
        account_id: str,
        amount: int,
        reason: str,
        kind: TransactionKind,
        external_ref: str | None,
    ) -> int:
        if amount > 0:
            applied = db.execute(
                update(CreditAccount)
                .execution_options(**_NO_SYNC)
                .where(CreditAccount.account_id == account_id)
                .values(balance=CreditAccount.balance + amount, updated_at=utcnow())
            ).rowcount
            if applied != 1:
                raise LedgerInvariantViolation(f"grant to unknown account {account_id}")
            db.add(
                CreditTransaction(
                    account_id=account_id,
                    kind=kind,
                    amount=amount,
                    delta=amount,
                    external_ref=external_ref,
                    description=reason,
                )
            )
            db.flush()
            logger.info("ledger.grant.ok account=%s kind=%s amount=%s ref=%s", account_id, kind.value, amount, external_ref)
        return self._balance(db, account_id)


def _non_negative(amount: int) -> int:
    value = int(amount)
    if value < 0:
        raise ValueError("credit amounts must be non-negative")
    return value
