from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from metering.core.settings import Settings
from metering.models.billing_event import BillingEvent
from metering.models.credit_account import CreditAccount
from metering.models.credit_transaction import TransactionKind
from metering.services.costs import PLAN_MONTHLY_CREDITS, next_reset_at, plan_credits
from metering.services.ledger import CreditLedger

logger = logging.getLogger(__name__)

HANDLED_EVENT_TYPES = frozenset(
    {
        "checkout_completed",
        "subscription_renewed",
        "subscription_updated",
        "subscription_cancelled",
        "pack_purchased",
        "payment_failed",
    }
)


@dataclass(frozen=True)
class BillingOutcome:
    event_id: str
    event_type: str
    outcome: str
    account_id: str | None = None
    credits_granted: int = 0


def _parse_iso8601(raw: str | None) -> datetime | None:
    if not raw:
        return None
    v = str(raw).strip()
    if not v:
        return None
    try:
        if v.endswith("Z"):
            v = v[:-1] + "+00:00"
        dt = datetime.fromisoformat(v)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def _positive_int(raw: Any) -> int:
    try:
        value = int(raw or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, value)


class BillingReconciler:
    """Applies payment-processor events to the ledger exactly once.

    The processor delivers at least once. Each event id is inserted into
    ``billing_events`` inside the same transaction as its effects; a unique
    violation on that insert means the event was already applied and it is
    acknowledged without touching balances.

    Payload shape::

        {"id": "evt_123", "type": "subscription_renewed",
         "data": {"account_id": "...", "plan_key": "creator", "credits": 900,
                  "current_period_end": "2026-11-01T00:00:00Z",
                  "customer_id": "...", "subscription_id": "..."}}

    Events that omit ``account_id`` are matched to an account through the
    processor customer id, then the subscription id, stored at checkout.
    """

    def __init__(self, session_factory: sessionmaker, ledger: CreditLedger, settings: Settings) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._settings = settings

    def handle_event(self, payload: dict[str, Any]) -> BillingOutcome:
        event_id = str(payload.get("id") or "").strip()
        if not event_id:
            raise ValueError("billing event id is required")
        event_type = str(payload.get("type") or "").strip().lower()
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            data = {}
        account_id = str(data.get("account_id") or "").strip() or None
        if account_id is None and event_type in HANDLED_EVENT_TYPES:
            account_id = self._account_for_processor_ids(data)

        if event_type in HANDLED_EVENT_TYPES and account_id:
            # Provisioned up front so grants below only need the caller's transaction.
            self._ledger.ensure_account(account_id)

        with self._session_factory() as db:
            try:
                db.add(
                    BillingEvent(
                        event_id=event_id,
                        event_type=event_type or "unknown",
                        account_id=account_id,
                        outcome="processing",
                    )
                )
                db.flush()
            except IntegrityError:
                db.rollback()
                logger.info("billing.event.duplicate event=%s type=%s", event_id, event_type)
                return BillingOutcome(event_id=event_id, event_type=event_type, outcome="skipped", account_id=account_id)

            try:
                outcome, granted = self._apply(db, event_id, event_type, account_id, data)
                db.execute(
                    update(BillingEvent)
                    .where(BillingEvent.event_id == event_id)
                    .values(outcome=outcome),
                    execution_options={"synchronize_session": False},
                )
                db.commit()
            except Exception:
                db.rollback()
                logger.exception("billing.event.failed event=%s type=%s account=%s", event_id, event_type, account_id)
                raise

        logger.info(
            "billing.event.%s event=%s type=%s account=%s granted=%s", outcome, event_id, event_type, account_id, granted
        )
        return BillingOutcome(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            account_id=account_id,
            credits_granted=granted,
        )

    def _account_for_processor_ids(self, data: dict[str, Any]) -> str | None:
        customer_id = str(data.get("customer_id") or "").strip()
        subscription_id = str(data.get("subscription_id") or "").strip()
        with self._session_factory() as db:
            row = None
            if customer_id:
                row = (
                    db.query(CreditAccount.account_id)
                    .filter(CreditAccount.provider_customer_id == customer_id)
                    .first()
                )
            if row is None and subscription_id:
                row = (
                    db.query(CreditAccount.account_id)
                    .filter(CreditAccount.provider_subscription_id == subscription_id)
                    .first()
                )
        return row[0] if row is not None else None

    def _apply(
        self, db: Session, event_id: str, event_type: str, account_id: str | None, data: dict[str, Any]
    ) -> tuple[str, int]:
        if event_type not in HANDLED_EVENT_TYPES:
            logger.warning("billing.event.unknown_type event=%s type=%s", event_id, event_type)
            return "ignored", 0
        if not account_id:
            logger.warning("billing.event.missing_account event=%s type=%s", event_id, event_type)
            return "ignored", 0

        acct = db.get(CreditAccount, account_id)
        current_plan = str((acct.plan_key if acct else None) or "free")
        plan_key = str(data.get("plan_key") or "").strip().lower() or current_plan
        period_end = _parse_iso8601(data.get("current_period_end"))
        customer_id = str(data.get("customer_id") or "").strip() or None
        subscription_id = str(data.get("subscription_id") or "").strip() or None

        if event_type == "checkout_completed":
            if plan_key not in PLAN_MONTHLY_CREDITS:
                logger.warning("billing.event.unknown_plan event=%s plan=%s", event_id, plan_key)
                return "ignored", 0
            credits = _positive_int(data.get("credits")) or plan_credits(self._settings, plan_key)
            self._ledger.set_plan(
                account_id,
                plan_key=plan_key,
                plan_status="active",
                reset_at=period_end or next_reset_at(),
                provider_customer_id=customer_id,
                provider_subscription_id=subscription_id,
                db=db,
            )
            self._ledger.grant(
                account_id, credits, f"{plan_key} plan purchase", kind=TransactionKind.GRANT, external_ref=event_id, db=db
            )
            return "applied", credits

        if event_type == "subscription_renewed":
            credits = _positive_int(data.get("credits")) or plan_credits(self._settings, plan_key)
            self._ledger.set_plan(
                account_id,
                plan_key=plan_key,
                plan_status="active",
                reset_at=period_end or next_reset_at(),
                provider_customer_id=customer_id,
                provider_subscription_id=subscription_id,
                db=db,
            )
            self._ledger.grant(
                account_id, credits, f"{plan_key} plan renewal", kind=TransactionKind.RENEWAL, external_ref=event_id, db=db
            )
            return "applied", credits

        if event_type == "subscription_updated":
            if plan_key not in PLAN_MONTHLY_CREDITS:
                logger.warning("billing.event.unknown_plan event=%s plan=%s", event_id, plan_key)
                return "ignored", 0
            # Mid-cycle change: an upgrade grants the difference now, a
            # downgrade only takes effect at the next renewal.
            old_credits = int(acct.plan_credits) if acct is not None and acct.plan_credits is not None else 0
            upgrade = plan_credits(self._settings, plan_key) - old_credits
            self._ledger.set_plan(
                account_id,
                plan_key=plan_key,
                plan_status="active",
                reset_at=period_end,
                provider_customer_id=customer_id,
                provider_subscription_id=subscription_id,
                db=db,
            )
            if upgrade <= 0:
                return "applied", 0
            self._ledger.grant(
                account_id,
                upgrade,
                f"upgrade {current_plan} to {plan_key}",
                kind=TransactionKind.GRANT,
                external_ref=event_id,
                db=db,
            )
            return "applied", upgrade

        if event_type == "subscription_cancelled":
            self._ledger.set_plan(
                account_id,
                plan_key="free",
                plan_status="cancelled",
                reset_at=period_end,
                clear_subscription=True,
                db=db,
            )
            return "applied", 0

        if event_type == "pack_purchased":
            credits = _positive_int(data.get("credits"))
            if credits <= 0:
                logger.warning("billing.event.empty_pack event=%s account=%s", event_id, account_id)
                return "ignored", 0
            self._ledger.grant(
                account_id, credits, "credit pack purchase", kind=TransactionKind.PACK_PURCHASE, external_ref=event_id, db=db
            )
            return "applied", credits

        # payment_failed: plan metadata only, the balance is left alone.
        self._ledger.set_plan(account_id, plan_key=current_plan, plan_status="past_due", db=db)
        return "applied", 0
