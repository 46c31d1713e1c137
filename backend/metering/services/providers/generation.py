from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from metering.core.errors import PermanentExecutionFailure, TransientExecutionFailure

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RenderedArtifact:
    data: bytes
    content_type: str


@dataclass(frozen=True)
class SafetyVerdict:
    safe: bool
    blocked_terms: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


def classify_status(status_code: int, detail: str) -> TransientExecutionFailure | PermanentExecutionFailure:
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return TransientExecutionFailure(f"provider_http_{status_code}: {detail}")
    return PermanentExecutionFailure(f"provider_http_{status_code}: {detail}")


class GenerationProviderClient:
    """HTTP client for the AI generation and moderation provider.

    One request per item; retries are the executor's job. Failures are raised
    already classified as transient or permanent.
    """

    def __init__(self, *, base_url: str, api_key: str | None, timeout_s: float = 120.0) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._api_key = (api_key or "").strip()
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        try:
            resp = await self._client.post(f"{self._base_url}{path}", headers=self._headers(), json=payload)
        except httpx.TimeoutException as e:
            raise TransientExecutionFailure(f"provider_timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransientExecutionFailure(f"provider_unreachable: {e}") from e

        if resp.status_code >= 400:
            detail = ""
            try:
                detail = resp.text[:300]
            except Exception:
                detail = ""
            raise classify_status(resp.status_code, detail)
        return resp

    async def render(self, *, kind: str, target_id: str | None, options: dict[str, Any]) -> RenderedArtifact:
        resp = await self._post("/v1/render", {"kind": kind, "target_id": target_id, "options": options or {}})
        if not resp.content:
            raise PermanentExecutionFailure(f"provider returned an empty {kind} artifact")
        content_type = resp.headers.get("content-type", "application/octet-stream").split(";")[0].strip()
        logger.info("provider.render.done kind=%s target=%s bytes=%s", kind, target_id, len(resp.content))
        return RenderedArtifact(data=resp.content, content_type=content_type)

    async def check_safety(self, text: str, audience: str | None) -> SafetyVerdict:
        resp = await self._post("/v1/moderations", {"text": text or "", "audience": audience or "adult"})
        try:
            data = resp.json() or {}
        except Exception as e:
            raise TransientExecutionFailure(f"moderation returned invalid JSON: {e}") from e
        return SafetyVerdict(
            safe=bool(data.get("safe")),
            blocked_terms=[str(t) for t in (data.get("blocked_terms") or [])],
            suggestions=[str(s) for s in (data.get("suggestions") or [])],
        )
