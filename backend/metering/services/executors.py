from __future__ import annotations

import asyncio
import logging
import mimetypes
import random
from collections.abc import Awaitable, Callable
from typing import Any

from metering.core.errors import PermanentExecutionFailure, TransientExecutionFailure
from metering.core.settings import Settings
from metering.models.job import Job, JobItem, JobStatus, JobType
from metering.services.job_state import ItemReport, JobStateMachine
from metering.services.job_store import JobStore
from metering.services.providers.generation import GenerationProviderClient
from metering.services.providers.storage import ObjectStorageClient

logger = logging.getLogger(__name__)


class ItemExecutor:
    """Produces one artifact for one job item and stores it.

    Subclasses pick the provider render kind and the storage folder; the
    returned value is the object-storage key of the stored artifact.
    """

    kind = ""
    folder = ""

    def __init__(self, provider: GenerationProviderClient, storage: ObjectStorageClient, settings: Settings) -> None:
        self._provider = provider
        self._storage = storage
        self._settings = settings

    async def options(self, job: Job, item: JobItem) -> dict[str, Any]:
        return dict(job.job_metadata or {})

    def asset_key(self, job: Job, item: JobItem, content_type: str) -> str:
        ext = mimetypes.guess_extension(content_type) or ".bin"
        return f"{job.owner_id}/{self.folder}/{job.id}/{item.id}{ext}"

    async def produce(self, job: Job, item: JobItem) -> str:
        artifact = await self._provider.render(
            kind=self.kind,
            target_id=item.target_id,
            options=await self.options(job, item),
        )
        key = self.asset_key(job, item, artifact.content_type)
        await self._storage.put_signed(key, artifact.data, artifact.content_type)
        return key


class GenerationExecutor(ItemExecutor):
    kind = "page"
    folder = "pages"


class HeroExecutor(ItemExecutor):
    kind = "hero_sheet"
    folder = "heroes"


class CalibrationExecutor(ItemExecutor):
    kind = "calibration_sample"
    folder = "calibration"


class ExportExecutor(ItemExecutor):
    kind = "export"
    folder = "exports"

    async def options(self, job: Job, item: JobItem) -> dict[str, Any]:
        opts = await super().options(job, item)
        source_keys = [str(k) for k in (opts.pop("source_keys", None) or []) if k]
        # The renderer pulls page artifacts itself through short-lived URLs.
        opts["sources"] = [
            await self._storage.get_signed_url(k, self._settings.signed_url_ttl_s) for k in source_keys
        ]
        return opts


def build_executors(
    provider: GenerationProviderClient, storage: ObjectStorageClient, settings: Settings
) -> dict[JobType, ItemExecutor]:
    return {
        JobType.GENERATION: GenerationExecutor(provider, storage, settings),
        JobType.HERO_CREATION: HeroExecutor(provider, storage, settings),
        JobType.CALIBRATION: CalibrationExecutor(provider, storage, settings),
        JobType.EXPORT: ExportExecutor(provider, storage, settings),
    }


class JobRunner:
    """Bounded async worker pool that drains a job's pending items."""

    def __init__(
        self,
        *,
        store: JobStore,
        state: JobStateMachine,
        executors: dict[JobType, ItemExecutor],
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._state = state
        self._executors = executors
        self._settings = settings
        self._sleep = sleep

    async def run_job(self, job_id: str) -> None:
        job = self._store.get_job(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            logger.info("runner.skip job=%s", job_id)
            return
        executor = self._executors[JobType(job.type)]

        queue: asyncio.Queue[JobItem] = asyncio.Queue()
        for item in self._store.pending_items(job_id):
            queue.put_nowait(item)
        if queue.empty():
            self._state.finalize_if_done(job_id)
            return

        workers = min(self._settings.executor_concurrency, queue.qsize())
        logger.info("runner.start job=%s type=%s items=%s workers=%s", job_id, job.type.value, queue.qsize(), workers)
        await asyncio.gather(*(self._worker(job_id, executor, queue) for _ in range(workers)))
        logger.info("runner.done job=%s", job_id)

    async def _worker(self, job_id: str, executor: ItemExecutor, queue: asyncio.Queue) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            job = self._store.get_job(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                # Cancelled or reaped: remaining items are left untouched.
                return
            try:
                await self.run_item(job, item, executor)
            except Exception:
                logger.exception("runner.item.crashed job=%s item=%s", job_id, item.id)

    async def run_item(self, job: Job, item: JobItem, executor: ItemExecutor) -> ItemReport | None:
        if not self._store.claim_item(item.id):
            return None

        max_attempts = 1 + self._settings.executor_max_retries
        attempts = 0
        while True:
            attempts += 1
            try:
                key = await asyncio.wait_for(executor.produce(job, item), timeout=self._settings.executor_timeout_s)
            except asyncio.TimeoutError:
                err: Exception = TransientExecutionFailure(f"timed out after {self._settings.executor_timeout_s}s")
            except TransientExecutionFailure as e:
                err = e
            except PermanentExecutionFailure as e:
                logger.info("runner.item.permanent_failure job=%s item=%s error=%s", job.id, item.id, e)
                return self._state.record_item_failure(item.id, error_message=str(e), attempts=attempts)
            except Exception as e:
                logger.exception("runner.item.unexpected_error job=%s item=%s", job.id, item.id)
                return self._state.record_item_failure(item.id, error_message=f"unexpected_error: {e}", attempts=attempts)
            else:
                return self._state.record_item_success(item.id, asset_key=key, attempts=attempts)

            if attempts >= max_attempts:
                logger.info("runner.item.retries_exhausted job=%s item=%s attempts=%s", job.id, item.id, attempts)
                return self._state.record_item_failure(
                    item.id, error_message=f"retries exhausted: {err}", attempts=attempts
                )
            logger.info("runner.item.retry job=%s item=%s attempt=%s error=%s", job.id, item.id, attempts, err)
            await self._sleep(self._backoff(attempts))

    def _backoff(self, attempt: int) -> float:
        base = self._settings.executor_retry_base_s
        return min(15.0, base * (2 ** (attempt - 1)) + random.random() * 0.25)
