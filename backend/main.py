import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from metering.api.endpoints import admin, billing, credits, jobs
from metering.core.services import Services, build_services
from metering.core.settings import Settings, settings

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(app_settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    app_settings = app_settings or settings
    services = services or build_services(app_settings)

    app = FastAPI(title="Credit Metering API")
    app.state.services = services

    # Configure CORS
    origins = app_settings.resolved_cors_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.on_event("startup")
    def startup() -> None:
        if app_settings.db_auto_create:
            services.create_schema()
        logger.info("app.startup environment=%s database=%s", app_settings.environment, services.engine.url.drivername)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await services.aclose()

    # API Routes
    app.include_router(jobs.router, prefix="/api", tags=["jobs"])
    app.include_router(credits.router, prefix="/api", tags=["credits"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(admin.router, prefix="/api", tags=["admin"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
