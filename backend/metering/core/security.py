from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from metering.core.services import Services, get_services


@dataclass(frozen=True)
class CurrentAccount:
    id: str


def get_current_account(request: Request) -> CurrentAccount:
    # Authentication happens upstream; it forwards the caller's account id.
    account_id = (request.headers.get("x-account-id") or "").strip()
    if not account_id:
        raise HTTPException(status_code=401, detail="Missing X-Account-Id")
    return CurrentAccount(id=account_id)


def require_admin(request: Request, services: Services = Depends(get_services)) -> None:
    expected = services.settings.admin_api_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    token = (request.headers.get("x-admin-token") or "").strip()
    if not token or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def verify_webhook_signature(secret: str | None, raw_body: bytes, signature: str | None) -> None:
    if not secret:
        raise HTTPException(status_code=500, detail="BILLING_WEBHOOK_SECRET is not configured")
    sig = (signature or "").strip()
    if not sig:
        raise HTTPException(status_code=400, detail="Missing X-Signature")
    digest = hmac.new(
        key=str(secret).encode("utf-8"),
        msg=raw_body,
        digestmod=hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(digest, sig):
        raise HTTPException(status_code=400, detail="Invalid signature")
