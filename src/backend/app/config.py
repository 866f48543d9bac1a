import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


# Local development loads environment from project root by default
load_dotenv(dotenv_path=os.getenv("ENV_FILE", ".env"), override=False)


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _is_true(name: str, default: str = "0") -> bool:
    return (_env(name, default) or default).strip().lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    supabase_url: str
    supabase_service_key: str
    supabase_timeout: float
    database_url: str
    data_backend: str  # supabase | sql
    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_webhook_dedup: bool
    frontend_url: str
    whatsapp_verify_token: str
    whatsapp_app_secret: str
    retention_days: int
    cleanup_interval_hours: float
    enable_cleanup_scheduler: bool
    redis_url: Optional[str]
    log_level: str


def load_settings() -> Settings:
    supabase_url = _env("SUPABASE_URL").rstrip("/")
    database_url = _env("DATABASE_URL", "sqlite:///./booking.db")
    # Normalize Render/Supabase postgres URL for SQLAlchemy 2.x
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+psycopg2://", 1)
    backend = _env("DATA_BACKEND", "supabase" if supabase_url else "sql").strip().lower()
    return Settings(
        supabase_url=supabase_url,
        supabase_service_key=_env("SUPABASE_SERVICE_ROLE_KEY", _env("SUPABASE_ANON_KEY")),
        supabase_timeout=float(_env("SUPABASE_TIMEOUT_SECONDS", "10")),
        database_url=database_url,
        data_backend=backend,
        stripe_secret_key=_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        stripe_webhook_dedup=_is_true("STRIPE_WEBHOOK_DEDUP"),
        frontend_url=_env("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
        whatsapp_verify_token=_env("WHATSAPP_VERIFY_TOKEN"),
        whatsapp_app_secret=_env("WHATSAPP_APP_SECRET"),
        retention_days=int(_env("CONVERSATION_RETENTION_DAYS", "60")),
        cleanup_interval_hours=float(_env("CLEANUP_INTERVAL_HOURS", "24")),
        enable_cleanup_scheduler=_is_true("ENABLE_CLEANUP_SCHEDULER"),
        redis_url=_env("REDIS_URL") or None,
        log_level=_env("LOG_LEVEL", "INFO").upper(),
    )
