from __future__ import annotations

from datetime import datetime, timezone

from metering.core.settings import Settings
from metering.models.job import JobType

PLAN_MONTHLY_CREDITS: dict[str, int] = {
    "free": 50,
    "starter": 300,
    "creator": 900,
    "pro": 2800,
}

# Plans renewed by the payment processor; the local sweep only renews the rest.
PROCESSOR_BILLED_PLANS: frozenset[str] = frozenset({"starter", "creator", "pro"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def item_cost(settings: Settings, job_type: JobType | str, mode: str | None = None) -> int:
    kind = JobType(job_type)
    if kind == JobType.GENERATION:
        # Edits of an existing page run as generation jobs at their own price.
        if (mode or "").strip().lower() == "edit":
            return int(settings.cost_edit)
        return int(settings.cost_generation)
    if kind == JobType.HERO_CREATION:
        return int(settings.cost_hero_creation)
    if kind == JobType.CALIBRATION:
        return int(settings.cost_calibration)
    return int(settings.cost_export)


def plan_credits(settings: Settings, plan_key: str | None) -> int:
    key = (plan_key or "free").strip().lower()
    if key == "free":
        return int(settings.free_plan_credits)
    return int(PLAN_MONTHLY_CREDITS.get(key, 0))


def next_reset_at(now: datetime | None = None) -> datetime:
    now = now or utcnow()
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
