from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # ─────────── APP ───────────
    app_name: str = "Dealcross Escrow"
    environment: str = "dev"
    log_level: str = "INFO"
    log_json: bool = True

    # ─────────── API ───────────
    api_prefix: str = "/api/v1"
    request_id_header: str = "X-Request-Id"

    # ─────────── DATABASE ───────────
    database_url: str

    # ─────────── JWT / AUTH ───────────
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    jwt_access_token_minutes: int = 1440  # 24 hours
    jwt_issuer: str = "dealcross"
    jwt_audience: str = "dealcross-api"

    # ─────────── ESCROW WINDOWS ───────────
    default_inspection_period_days: int = 3
    escrow_expiry_days: int = 30
    dispute_window_days: int = 14

    # ─────────── CONCURRENCY ───────────
    conflict_retry_attempts: int = 3
    transition_lock_timeout_ms: int = 5000  # postgres only

    # ─────────── PAYOUT ───────────
    auto_payout_on_confirm: bool = True

    # ─────────── RATE LIMITS ───────────
    escrow_create_rate_capacity: int = 10
    escrow_create_rate_per_minute: float = 10.0
    dispute_rate_capacity: int = 5
    dispute_rate_per_minute: float = 2.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
