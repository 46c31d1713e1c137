import hashlib
import hmac
import json
import unittest

from fastapi.testclient import TestClient

from main import create_app
from support import ADMIN_TOKEN, WEBHOOK_SECRET, ServicesMixin


def _signed(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    sig = hmac.new(WEBHOOK_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return body, {"X-Signature": sig, "Content-Type": "application/json"}


class ApiTestCase(ServicesMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.client = TestClient(create_app(self.settings, self.services))

    def as_account(self, account_id: str = "acct-1") -> dict:
        return {"X-Account-Id": account_id}


class TestJobsApi(ApiTestCase):
    def test_requires_account_header(self):
        resp = self.client.post("/api/jobs", json={"type": "generation", "items": ["p1"]})
        self.assertEqual(resp.status_code, 401)

    def test_insufficient_credits_is_402_with_shortfall(self):
        self.seed("acct-1", 50)
        resp = self.client.post(
            "/api/jobs", json={"type": "generation", "items": ["p1", "p2", "p3", "p4", "p5"]}, headers=self.as_account()
        )
        self.assertEqual(resp.status_code, 402)
        detail = resp.json()["detail"]
        self.assertEqual((detail["required"], detail["available"], detail["shortfall"]), (60, 50, 10))
        self.assertEqual(self.ledger.get_balance("acct-1"), 50)

    def test_job_runs_in_background_and_reports_status(self):
        self.seed("acct-1", 100)
        resp = self.client.post(
            "/api/jobs",
            json={"type": "generation", "items": ["p1", "p2"], "project_id": "proj-1"},
            headers=self.as_account(),
        )
        self.assertEqual(resp.status_code, 202)
        started = resp.json()
        self.assertEqual(started["credits_reserved"], 24)

        resp = self.client.get(f"/api/jobs/{started['job_id']}", headers=self.as_account())
        self.assertEqual(resp.status_code, 200)
        job = resp.json()
        self.assertEqual(job["status"], "completed")
        self.assertEqual(job["credits_spent"], 24)
        self.assertEqual([i["status"] for i in job["items"]], ["completed", "completed"])

        listing = self.client.get("/api/jobs", headers=self.as_account()).json()
        self.assertEqual([j["id"] for j in listing], [started["job_id"]])

    def test_unsafe_prompt_is_rejected_before_reserving(self):
        self.services.provider.safe = False
        self.seed("acct-1", 100)
        resp = self.client.post(
            "/api/jobs",
            json={"type": "generation", "items": ["p1"], "prompt": "a gory battle", "audience": "kids"},
            headers=self.as_account(),
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"]["blocked_terms"], ["gore"])
        self.assertEqual(self.ledger.get_balance("acct-1"), 100)

    def test_job_access_is_owner_only(self):
        self.seed("acct-1", 100)
        job_id = self.client.post(
            "/api/jobs", json={"type": "export", "items": ["e1"]}, headers=self.as_account()
        ).json()["job_id"]
        self.assertEqual(self.client.get(f"/api/jobs/{job_id}", headers=self.as_account("acct-2")).status_code, 403)
        self.assertEqual(self.client.get("/api/jobs/unknown", headers=self.as_account()).status_code, 404)

    def test_cancel_finished_job_is_409(self):
        self.seed("acct-1", 100)
        job_id = self.client.post(
            "/api/jobs", json={"type": "calibration", "items": ["c1"]}, headers=self.as_account()
        ).json()["job_id"]
        resp = self.client.post(f"/api/jobs/{job_id}/cancel", headers=self.as_account())
        self.assertEqual(resp.status_code, 409)

    def test_cancel_refunds(self):
        self.seed("acct-1", 100)
        started = self.dispatcher.start_job("acct-1", "hero_creation", ["h1", "h2"])
        resp = self.client.post(f"/api/jobs/{started.job_id}/cancel", headers=self.as_account())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["credits_refunded"], 30)
        self.assertEqual(resp.json()["new_balance"], 100)


class TestCreditsApi(ApiTestCase):
    def test_balance_and_transactions(self):
        self.seed("acct-1", 75)
        resp = self.client.get("/api/credits", headers=self.as_account())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["balance"], 75)
        self.assertEqual(resp.json()["plan_key"], "free")

        rows = self.client.get("/api/credits/transactions?limit=5", headers=self.as_account()).json()
        self.assertEqual([(r["kind"], r["delta"]) for r in rows], [("grant", 75)])


class TestBillingWebhookApi(ApiTestCase):
    def test_rejects_bad_signature(self):
        body, headers = _signed({"id": "evt_1", "type": "pack_purchased", "data": {"account_id": "acct-1"}})
        headers["X-Signature"] = "0" * 64
        resp = self.client.post("/api/billing/webhook", content=body, headers=headers)
        self.assertEqual(resp.status_code, 400)

    def test_applies_event_once(self):
        payload = {"id": "evt_1", "type": "pack_purchased", "data": {"account_id": "acct-1", "credits": 200}}
        body, headers = _signed(payload)
        first = self.client.post("/api/billing/webhook", content=body, headers=headers)
        second = self.client.post("/api/billing/webhook", content=body, headers=headers)
        self.assertEqual(first.json()["outcome"], "applied")
        self.assertEqual(second.json()["outcome"], "skipped")
        self.assertEqual(self.ledger.get_balance("acct-1"), 200)

    def test_unknown_event_is_acknowledged(self):
        body, headers = _signed({"id": "evt_2", "type": "invoice_drafted", "data": {}})
        resp = self.client.post("/api/billing/webhook", content=body, headers=headers)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["outcome"], "ignored")


class TestAdminApi(ApiTestCase):
    def test_requires_token(self):
        resp = self.client.post("/api/admin/credits/grant", json={"account_id": "acct-1", "amount": 10})
        self.assertEqual(resp.status_code, 401)

    def test_grant_and_stats(self):
        headers = {"X-Admin-Token": ADMIN_TOKEN}
        resp = self.client.post(
            "/api/admin/credits/grant", json={"account_id": "acct-1", "amount": 40, "reason": "support"}, headers=headers
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["balance"], 40)

        self.dispatcher.start_job("acct-1", "export", ["e1", "e2"])
        stats = self.client.get("/api/admin/jobs/stats", headers=headers).json()
        self.assertEqual(stats["jobs"], 1)
        self.assertEqual(stats["by_status"]["processing"], 1)
        self.assertEqual(stats["credits_reserved"], 6)


class TestHealth(ApiTestCase):
    def test_health(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "healthy"})


if __name__ == "__main__":
    unittest.main()
