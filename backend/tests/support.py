import asyncio
import tempfile
from pathlib import Path

from metering.core.services import build_services
from metering.core.settings import Settings
from metering.models.credit_transaction import CreditTransaction
from metering.services.providers.generation import RenderedArtifact, SafetyVerdict

WEBHOOK_SECRET = "whsec_test"
ADMIN_TOKEN = "admin-test-token"


def make_settings(tmpdir: str, **overrides) -> Settings:
    settings = Settings()
    settings.database_url = f"sqlite:///{Path(tmpdir) / 'test.db'}"
    settings.db_auto_create = True
    settings.free_plan_credits = 0
    settings.executor_concurrency = 3
    settings.executor_timeout_s = 5.0
    settings.executor_max_retries = 2
    settings.executor_retry_base_s = 0.0
    settings.billing_webhook_secret = WEBHOOK_SECRET
    settings.admin_api_token = ADMIN_TOKEN
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


class FakeProvider:
    """Scripted stand-in for the generation provider.

    ``script`` maps a target id to a list of steps consumed one per call:
    an exception instance is raised, ``"hang"`` never returns, anything
    else renders a small PNG.
    """

    def __init__(self, script: dict | None = None, *, safe: bool = True, delay_s: float = 0.0) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.safe = safe
        self.delay_s = delay_s
        self.calls: list[tuple[str, str | None, dict]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def render(self, *, kind, target_id, options):
        self.calls.append((kind, target_id, dict(options or {})))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            steps = self.script.get(target_id) or []
            step = steps.pop(0) if steps else "ok"
            if isinstance(step, BaseException):
                raise step
            if step == "hang":
                await asyncio.sleep(3600)
            return RenderedArtifact(data=b"\x89PNG-test", content_type="image/png")
        finally:
            self.in_flight -= 1

    async def check_safety(self, text, audience):
        if self.safe:
            return SafetyVerdict(safe=True)
        return SafetyVerdict(safe=False, blocked_terms=["gore"], suggestions=["try a friendlier scene"])

    async def aclose(self) -> None:
        return None


class FakeStorage:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def put_signed(self, key, data, content_type):
        self.objects[key] = (data, content_type)

    async def get_signed_url(self, key, ttl_s):
        return f"https://storage.test/{key}?ttl={ttl_s}"

    async def aclose(self) -> None:
        return None


class ServicesMixin:
    """Fresh SQLite file and service graph per test."""

    settings_overrides: dict = {}

    def setUp(self):
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.settings = make_settings(self._tmp.name, **self.settings_overrides)
        self.provider = FakeProvider()
        self.storage = FakeStorage()
        self.services = build_services(self.settings, provider=self.provider, storage=self.storage)
        self.services.create_schema()
        self.ledger = self.services.ledger
        self.store = self.services.store
        self.state = self.services.state
        self.dispatcher = self.services.dispatcher

    def tearDown(self):
        self.services.engine.dispose()
        self._tmp.cleanup()
        super().tearDown()

    def seed(self, account_id: str, amount: int) -> None:
        self.ledger.grant(account_id, amount, "test seed")

    def transactions(self, account_id: str | None = None, job_id: str | None = None) -> list[CreditTransaction]:
        with self.services.session_factory() as db:
            q = db.query(CreditTransaction)
            if account_id is not None:
                q = q.filter(CreditTransaction.account_id == account_id)
            if job_id is not None:
                q = q.filter(CreditTransaction.job_id == job_id)
            return q.order_by(CreditTransaction.id.asc()).all()

    def start(self, account_id: str, count: int, job_type: str = "generation", **kwargs):
        return self.dispatcher.start_job(account_id, job_type, [f"target-{i}" for i in range(count)], **kwargs)

    def claim_all(self, job_id: str) -> list:
        items = self.store.get_job(job_id).items
        for item in items:
            self.assertTrue(self.store.claim_item(item.id))
        return items
