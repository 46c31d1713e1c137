import unittest
from unittest import mock

from metering.core.errors import Forbidden, InsufficientCredits, JobCreationFailed, NotFound
from metering.models.credit_transaction import TransactionKind
from metering.models.job import Job, JobItemStatus, JobStatus
from metering.services.dispatcher import StartedJob
from support import ServicesMixin


class TestStartJob(ServicesMixin, unittest.TestCase):
    settings_overrides = {"free_plan_credits": 50}

    def test_insufficient_credits_creates_nothing(self):
        result = self.start("acct-1", 5)
        self.assertIsInstance(result, InsufficientCredits)
        self.assertEqual((result.required, result.available, result.shortfall), (60, 50, 10))
        self.assertEqual(self.ledger.get_balance("acct-1"), 50)
        self.assertEqual([r.kind for r in self.transactions("acct-1")], [TransactionKind.GRANT])
        with self.services.session_factory() as db:
            self.assertEqual(db.query(Job).count(), 0)

    def test_start_reserves_and_hands_off(self):
        queued = []
        self.seed("acct-1", 50)
        result = self.start("acct-1", 5, project_id="proj-1", enqueue=queued.append)

        self.assertIsInstance(result, StartedJob)
        self.assertEqual(result.credits_reserved, 60)
        self.assertEqual(result.status, JobStatus.PROCESSING)
        self.assertEqual(queued, [result.job_id])
        self.assertEqual(self.ledger.get_balance("acct-1"), 40)

        job = self.store.get_job(result.job_id)
        self.assertEqual(job.status, JobStatus.PROCESSING)
        self.assertEqual(job.project_id, "proj-1")
        self.assertEqual(job.credits_per_item, 12)
        self.assertIsNotNone(job.started_at)
        self.assertEqual([i.status for i in job.items], [JobItemStatus.PENDING] * 5)

    def test_costs_follow_job_type(self):
        self.seed("acct-1", 500)
        self.assertEqual(self.start("acct-1", 2, "hero_creation").credits_reserved, 30)
        self.assertEqual(self.start("acct-1", 3, "calibration").credits_reserved, 30)
        self.assertEqual(self.start("acct-1", 4, "export").credits_reserved, 12)

    def test_edit_mode_uses_edit_price(self):
        self.settings.cost_edit = 7
        self.seed("acct-1", 100)
        result = self.start("acct-1", 2, metadata={"mode": "edit"})
        self.assertEqual(result.credits_reserved, 14)

    def test_empty_job_rejected(self):
        with self.assertRaises(ValueError):
            self.dispatcher.start_job("acct-1", "generation", [])
        self.assertEqual(self.ledger.get_balance("acct-1"), 50)

    def test_failed_job_creation_releases_reservation(self):
        self.seed("acct-1", 50)
        with mock.patch.object(self.store, "create_job", side_effect=RuntimeError("datastore unavailable")):
            with self.assertRaises(JobCreationFailed):
                self.start("acct-1", 5)

        self.assertEqual(self.ledger.get_balance("acct-1"), 100)
        kinds = [r.kind for r in self.transactions("acct-1")]
        self.assertEqual(kinds.count(TransactionKind.RESERVE), 1)
        self.assertEqual(kinds.count(TransactionKind.REFUND), 1)
        self.assertEqual(self.ledger.verify_conservation("acct-1"), 100)
        with self.services.session_factory() as db:
            self.assertEqual(db.query(Job).count(), 0)

    def test_failed_start_abandons_job_with_full_refund(self):
        self.seed("acct-1", 50)
        queued = []
        with mock.patch.object(self.store, "mark_processing", side_effect=RuntimeError("database is locked")):
            with self.assertRaises(JobCreationFailed):
                self.start("acct-1", 5, enqueue=queued.append)

        self.assertEqual(queued, [])
        with self.services.session_factory() as db:
            job = db.query(Job).one()
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertTrue(job.refund_issued)
        self.assertEqual(self.ledger.get_balance("acct-1"), 100)
        self.assertEqual(self.ledger.verify_conservation("acct-1"), 100)

    def test_lost_start_reports_actual_status(self):
        self.seed("acct-1", 50)
        queued = []

        def cancelled_before_start(job_id):
            self.store.transition_terminal(job_id, JobStatus.CANCELLED, error_message="cancelled by user")
            return False

        with mock.patch.object(self.state, "start", side_effect=cancelled_before_start):
            result = self.start("acct-1", 2, enqueue=queued.append)

        self.assertEqual(result.status, JobStatus.CANCELLED)
        self.assertEqual(queued, [])


class TestQueries(ServicesMixin, unittest.TestCase):
    def test_job_status_checks_ownership(self):
        self.seed("acct-1", 100)
        job_id = self.start("acct-1", 1).job_id
        self.assertEqual(self.dispatcher.get_job_status(job_id, "acct-1").id, job_id)
        self.assertIsInstance(self.dispatcher.get_job_status(job_id, "acct-2"), Forbidden)
        self.assertIsInstance(self.dispatcher.get_job_status("nope", "acct-1"), NotFound)

    def test_list_jobs_is_scoped_to_owner(self):
        self.seed("acct-1", 100)
        self.seed("acct-2", 100)
        self.start("acct-1", 1)
        self.start("acct-1", 1)
        self.start("acct-2", 1)
        self.assertEqual(len(self.dispatcher.list_jobs("acct-1")), 2)
        self.assertEqual(len(self.dispatcher.list_jobs("acct-2")), 1)

    def test_balance_summary(self):
        self.seed("acct-1", 30)
        summary = self.dispatcher.get_balance("acct-1")
        self.assertEqual(summary.balance, 30)
        self.assertEqual(summary.plan_key, "free")
        self.assertIsNotNone(summary.next_reset_at)


if __name__ == "__main__":
    unittest.main()
