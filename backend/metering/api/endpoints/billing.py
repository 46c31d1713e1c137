from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Request

from metering.core.security import verify_webhook_signature
from metering.core.services import Services, get_services
from metering.schemas.billing import WebhookAck

router = APIRouter()


@router.post("/billing/webhook", response_model=WebhookAck)
async def billing_webhook(request: Request, services: Services = Depends(get_services)) -> WebhookAck:
    raw_body = await request.body()
    verify_webhook_signature(services.settings.billing_webhook_secret, raw_body, request.headers.get("x-signature"))
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not str(payload.get("id") or "").strip():
        raise HTTPException(status_code=400, detail="Missing event id")

    # Datastore failures propagate as 500 so the processor redelivers.
    outcome = services.reconciler.handle_event(payload)
    return WebhookAck(event_id=outcome.event_id, outcome=outcome.outcome)
