import unittest

from metering.core.errors import PermanentExecutionFailure, TransientExecutionFailure
from metering.models.job import JobItemStatus, JobStatus
from metering.services.executors import JobRunner, build_executors
from support import FakeProvider, ServicesMixin


class RunnerTestCase(ServicesMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        super().setUp()
        self.sleeps: list[float] = []
        self.seed("acct-1", 100)

    async def _record_sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def runner(self, provider: FakeProvider) -> JobRunner:
        self.provider = provider
        return JobRunner(
            store=self.store,
            state=self.state,
            executors=build_executors(provider, self.storage, self.settings),
            settings=self.settings,
            sleep=self._record_sleep,
        )

    def item_for(self, job_id: str, target_id: str):
        return [i for i in self.store.get_job(job_id).items if i.target_id == target_id][0]


class TestJobRunner(RunnerTestCase):
    async def test_runs_every_item_and_stores_artifacts(self):
        job_id = self.start("acct-1", 3).job_id
        await self.runner(FakeProvider()).run_job(job_id)

        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.completed_items, 3)
        self.assertEqual(len(self.storage.objects), 3)
        for item in job.items:
            self.assertTrue(item.asset_key.startswith(f"acct-1/pages/{job_id}/"))
            self.assertIn(item.asset_key, self.storage.objects)
        self.assertEqual(self.ledger.get_balance("acct-1"), 64)

    async def test_concurrency_is_bounded(self):
        self.settings.executor_concurrency = 2
        job_id = self.start("acct-1", 6, "export").job_id
        provider = FakeProvider(delay_s=0.01)
        await self.runner(provider).run_job(job_id)
        self.assertEqual(len(provider.calls), 6)
        self.assertLessEqual(provider.max_in_flight, 2)
        self.assertEqual(self.store.get_job(job_id).status, JobStatus.COMPLETED)

    async def test_transient_failure_is_retried(self):
        job_id = self.start("acct-1", 1).job_id
        provider = FakeProvider({"target-0": [TransientExecutionFailure("provider_http_503"), "ok"]})
        await self.runner(provider).run_job(job_id)

        item = self.item_for(job_id, "target-0")
        self.assertEqual(item.status, JobItemStatus.COMPLETED)
        self.assertEqual(item.attempts, 2)
        self.assertEqual(len(self.sleeps), 1)
        self.assertLessEqual(self.sleeps[0], 15.0)

    async def test_transient_failures_exhaust_retries(self):
        job_id = self.start("acct-1", 1).job_id
        provider = FakeProvider({"target-0": [TransientExecutionFailure("provider_http_429")] * 5})
        await self.runner(provider).run_job(job_id)

        item = self.item_for(job_id, "target-0")
        self.assertEqual(item.status, JobItemStatus.FAILED)
        self.assertEqual(item.attempts, 3)
        self.assertIn("retries exhausted", item.error_message)
        self.assertEqual(len(self.sleeps), 2)
        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(self.ledger.get_balance("acct-1"), 100)

    async def test_permanent_failure_is_not_retried(self):
        job_id = self.start("acct-1", 2).job_id
        provider = FakeProvider({"target-1": [PermanentExecutionFailure("provider_http_422: bad prompt")]})
        await self.runner(provider).run_job(job_id)

        failed = self.item_for(job_id, "target-1")
        self.assertEqual(failed.status, JobItemStatus.FAILED)
        self.assertEqual(failed.attempts, 1)
        self.assertEqual(self.sleeps, [])
        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.credits_spent, 12)
        self.assertEqual(self.ledger.get_balance("acct-1"), 88)

    async def test_timeout_counts_as_transient(self):
        self.settings.executor_timeout_s = 0.05
        self.settings.executor_max_retries = 1
        job_id = self.start("acct-1", 1).job_id
        provider = FakeProvider({"target-0": ["hang", "hang"]})
        await self.runner(provider).run_job(job_id)

        item = self.item_for(job_id, "target-0")
        self.assertEqual(item.status, JobItemStatus.FAILED)
        self.assertEqual(item.attempts, 2)
        self.assertIn("timed out", item.error_message)

    async def test_unexpected_error_fails_only_that_item(self):
        job_id = self.start("acct-1", 2).job_id
        provider = FakeProvider({"target-0": [KeyError("boom")]})
        with self.assertLogs("metering.services.executors", level="ERROR"):
            await self.runner(provider).run_job(job_id)

        self.assertIn("unexpected_error", self.item_for(job_id, "target-0").error_message)
        self.assertEqual(self.item_for(job_id, "target-1").status, JobItemStatus.COMPLETED)
        self.assertEqual(self.store.get_job(job_id).status, JobStatus.COMPLETED)

    async def test_cancelled_job_is_not_executed(self):
        job_id = self.start("acct-1", 3).job_id
        self.state.cancel(job_id, "acct-1")
        provider = FakeProvider()
        await self.runner(provider).run_job(job_id)
        self.assertEqual(provider.calls, [])
        self.assertEqual(self.ledger.get_balance("acct-1"), 100)

    async def test_export_renders_from_signed_source_urls(self):
        job_id = self.start(
            "acct-1", 1, "export", metadata={"source_keys": ["acct-1/pages/a.png", "acct-1/pages/b.png"]}
        ).job_id
        provider = FakeProvider()
        await self.runner(provider).run_job(job_id)

        kind, _target, options = provider.calls[0]
        self.assertEqual(kind, "export")
        self.assertEqual(
            options["sources"],
            [
                "https://storage.test/acct-1/pages/a.png?ttl=3600",
                "https://storage.test/acct-1/pages/b.png?ttl=3600",
            ],
        )
        self.assertNotIn("source_keys", options)


if __name__ == "__main__":
    unittest.main()
