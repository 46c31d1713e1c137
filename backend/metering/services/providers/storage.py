from __future__ import annotations

import logging

import httpx

from metering.core.errors import TransientExecutionFailure

logger = logging.getLogger(__name__)


class ObjectStorageClient:
    """Signed-URL object storage. Every failure is treated as transient."""

    def __init__(self, *, base_url: str, api_key: str | None, bucket: str, timeout_s: float = 60.0) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._api_key = (api_key or "").strip()
        self._bucket = (bucket or "").strip()
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _sign(self, action: str, payload: dict) -> str:
        try:
            resp = await self._client.post(
                f"{self._base_url}/v1/buckets/{self._bucket}/{action}",
                headers=self._headers(),
                json=payload,
            )
            resp.raise_for_status()
            url = str((resp.json() or {}).get("url") or "")
        except httpx.HTTPError as e:
            raise TransientExecutionFailure(f"storage_{action}_failed: {e}") from e
        except ValueError as e:
            raise TransientExecutionFailure(f"storage_{action}_invalid_json: {e}") from e
        if not url:
            raise TransientExecutionFailure(f"storage_{action}_missing_url")
        return url

    async def put_signed(self, key: str, data: bytes, content_type: str) -> None:
        url = await self._sign("sign-upload", {"key": key, "content_type": content_type})
        try:
            resp = await self._client.put(url, content=data, headers={"Content-Type": content_type})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientExecutionFailure(f"storage_upload_failed key={key}: {e}") from e
        logger.info("storage.put.done key=%s bytes=%s", key, len(data))

    async def get_signed_url(self, key: str, ttl_s: int) -> str:
        return await self._sign("sign-download", {"key": key, "ttl": int(ttl_s)})
