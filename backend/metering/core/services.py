from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from metering.core.database import Base, create_db_engine, create_session_factory
from metering.core.settings import Settings
from metering.services.billing import BillingReconciler
from metering.services.dispatcher import JobDispatcher
from metering.services.executors import JobRunner, build_executors
from metering.services.job_state import JobStateMachine
from metering.services.job_store import JobStore
from metering.services.ledger import CreditLedger
from metering.services.maintenance import MaintenanceService
from metering.services.providers.generation import GenerationProviderClient
from metering.services.providers.storage import ObjectStorageClient


@dataclass
class Services:
    """Every long-lived collaborator, built once per process."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    ledger: CreditLedger
    store: JobStore
    state: JobStateMachine
    dispatcher: JobDispatcher
    runner: JobRunner
    reconciler: BillingReconciler
    maintenance: MaintenanceService
    provider: GenerationProviderClient
    storage: ObjectStorageClient

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    async def aclose(self) -> None:
        await self.provider.aclose()
        await self.storage.aclose()
        self.engine.dispose()


def build_services(
    settings: Settings,
    *,
    provider: GenerationProviderClient | None = None,
    storage: ObjectStorageClient | None = None,
) -> Services:
    # Model modules register their tables on Base when imported.
    import metering.models.billing_event  # noqa: F401
    import metering.models.credit_account  # noqa: F401
    import metering.models.credit_transaction  # noqa: F401
    import metering.models.job  # noqa: F401

    engine = create_db_engine(settings.database_url)
    session_factory = create_session_factory(engine)

    provider = provider or GenerationProviderClient(
        base_url=settings.provider_base_url,
        api_key=settings.provider_api_key,
        timeout_s=settings.executor_timeout_s,
    )
    storage = storage or ObjectStorageClient(
        base_url=settings.storage_base_url,
        api_key=settings.storage_api_key,
        bucket=settings.storage_bucket,
    )

    ledger = CreditLedger(session_factory, settings)
    store = JobStore(session_factory)
    state = JobStateMachine(store, ledger)
    runner = JobRunner(
        store=store,
        state=state,
        executors=build_executors(provider, storage, settings),
        settings=settings,
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        ledger=ledger,
        store=store,
        state=state,
        dispatcher=JobDispatcher(ledger=ledger, store=store, state=state, settings=settings),
        runner=runner,
        reconciler=BillingReconciler(session_factory, ledger, settings),
        maintenance=MaintenanceService(
            session_factory=session_factory,
            store=store,
            state=state,
            ledger=ledger,
            settings=settings,
        ),
        provider=provider,
        storage=storage,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
