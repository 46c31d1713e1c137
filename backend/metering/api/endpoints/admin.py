from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func

from metering.core.security import require_admin
from metering.core.services import Services, get_services
from metering.models.credit_transaction import TransactionKind
from metering.models.job import Job, JobStatus
from metering.schemas.credits import CreditGrantRequest

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/admin/credits/grant")
async def admin_grant_credits(body: CreditGrantRequest, services: Services = Depends(get_services)) -> dict:
    account_id = body.account_id.strip()
    reason = (body.reason or "").strip() or "admin grant"
    new_balance = services.ledger.grant(account_id, body.amount, reason, kind=TransactionKind.GRANT, external_ref="admin")
    return {"account_id": account_id, "granted": body.amount, "balance": new_balance}


@router.get("/admin/jobs/stats")
async def admin_job_stats(services: Services = Depends(get_services)) -> dict:
    with services.session_factory() as db:
        rows = db.query(Job.status, func.count(Job.id)).group_by(Job.status).all()
        reserved, spent, refunded = db.query(
            func.coalesce(func.sum(Job.credits_reserved), 0),
            func.coalesce(func.sum(Job.credits_spent), 0),
            func.coalesce(func.sum(Job.credits_refunded), 0),
        ).one()
    by_status = {s.value: 0 for s in JobStatus}
    for status, count in rows:
        by_status[JobStatus(status).value] = int(count or 0)
    return {
        "jobs": sum(by_status.values()),
        "by_status": by_status,
        "credits_reserved": int(reserved or 0),
        "credits_spent": int(spent or 0),
        "credits_refunded": int(refunded or 0),
    }


@router.post("/admin/maintenance/reap")
async def admin_reap_stuck_jobs(services: Services = Depends(get_services)) -> dict:
    report = services.maintenance.reap_stuck_jobs()
    return {"reaped": report.reaped, "resettled": report.resettled, "failed": report.failed}


@router.post("/admin/maintenance/renew")
async def admin_renew_due_accounts(services: Services = Depends(get_services)) -> dict:
    report = services.maintenance.renew_due_accounts()
    return {"renewed": report.renewed, "credits_granted": report.credits_granted}
