import tempfile
from pathlib import Path

from metering.core.database import Base, create_db_engine, create_session_factory
from metering.core.settings import Settings
from metering.models.credit_transaction import CreditTransaction, TransactionKind
from metering.models.job import JobStatus, JobType
from metering.services.dispatcher import JobDispatcher
from metering.services.job_state import JobStateMachine
from metering.services.job_store import JobStore
from metering.services.ledger import CreditLedger


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        settings = Settings()
        settings.database_url = f"sqlite:///{Path(tmp) / 'verify.db'}"
        settings.free_plan_credits = 0
        engine = create_db_engine(settings.database_url)
        Base.metadata.create_all(bind=engine)
        SessionLocal = create_session_factory(engine)

        ledger = CreditLedger(SessionLocal, settings)
        store = JobStore(SessionLocal)
        state = JobStateMachine(store, ledger)
        dispatcher = JobDispatcher(ledger=ledger, store=store, state=state, settings=settings)

        account = "acct-1"
        ledger.grant(account, 100, "verify seed")
        assert ledger.get_balance(account) == 100

        # Five pages at 12 credits: three render, two fail.
        started = dispatcher.start_job(account, JobType.GENERATION, [f"page-{i}" for i in range(5)])
        assert started.credits_reserved == 60, started
        assert ledger.get_balance(account) == 40

        items = store.get_job(started.job_id).items
        for item in items:
            assert store.claim_item(item.id)
        for item in items[:3]:
            state.record_item_success(item.id, asset_key=f"{account}/pages/{item.id}.png", attempts=1)
        for item in items[3:]:
            state.record_item_failure(item.id, error_message="provider_http_422", attempts=1)

        job = store.get_job(started.job_id)
        assert job.status == JobStatus.COMPLETED, job.status
        assert job.credits_spent == 36, job.credits_spent
        assert job.credits_refunded == 24, job.credits_refunded
        assert ledger.get_balance(account) == 64

        with SessionLocal() as db:
            kinds = [r.kind for r in db.query(CreditTransaction).filter(CreditTransaction.job_id == job.id).all()]
        assert kinds.count(TransactionKind.RESERVE) == 1
        assert kinds.count(TransactionKind.DEDUCT) == 1
        assert kinds.count(TransactionKind.REFUND) == 1
        assert ledger.verify_conservation(account) == 64

        engine.dispose()


if __name__ == "__main__":
    main()
    print("OK")
