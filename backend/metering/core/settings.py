import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    return int(raw)


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    return float(raw)


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./metering.db") or "sqlite:///./metering.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")

        self.cost_generation = _getenv_int("COST_GENERATION", 12)
        self.cost_edit = _getenv_int("COST_EDIT", 12)
        self.cost_calibration = _getenv_int("COST_CALIBRATION", 10)
        self.cost_hero_creation = _getenv_int("COST_HERO_CREATION", 15)
        self.cost_export = _getenv_int("COST_EXPORT", 3)

        self.free_plan_credits = _getenv_int("FREE_PLAN_CREDITS", 50)

        self.executor_concurrency = max(1, _getenv_int("EXECUTOR_CONCURRENCY", 3))
        self.executor_timeout_s = _getenv_float("EXECUTOR_TIMEOUT_S", 120.0)
        self.executor_max_retries = max(0, _getenv_int("EXECUTOR_MAX_RETRIES", 2))
        self.executor_retry_base_s = _getenv_float("EXECUTOR_RETRY_BASE_S", 0.7)

        self.provider_base_url = _getenv("PROVIDER_BASE_URL", "http://localhost:8100") or "http://localhost:8100"
        self.provider_api_key = _getenv("PROVIDER_API_KEY")
        self.storage_base_url = _getenv("STORAGE_BASE_URL", "http://localhost:9000") or "http://localhost:9000"
        self.storage_api_key = _getenv("STORAGE_API_KEY")
        self.storage_bucket = _getenv("STORAGE_BUCKET", "assets") or "assets"
        self.signed_url_ttl_s = _getenv_int("SIGNED_URL_TTL_S", 3600)

        self.billing_webhook_secret = _getenv("BILLING_WEBHOOK_SECRET")
        self.admin_api_token = _getenv("ADMIN_API_TOKEN")

        self.job_stuck_timeout_minutes = _getenv_int("JOB_STUCK_TIMEOUT_MINUTES", 30)

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:5173", "http://localhost:8000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins


settings = Settings()
