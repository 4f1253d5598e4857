"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. The .env file is gitignored; .env.example provides a safe template.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from app.config import settings
    print(settings.PROVIDER_FRONTEND_URL)
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the Voucher Ledger API.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Used to verify identity JWT tokens
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "Voucher Ledger API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Database ---
    # SQLite for local use; swap to a PostgreSQL (asyncpg) URL in production
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/vouchers.db"

    # --- Identity tokens ---
    # REQUIRED: No default; identities are issued elsewhere with this secret
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --- CORS ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]

    # --- Notifications ---
    # Link sent to a provider when a sponsor approves it for a fund
    PROVIDER_FRONTEND_URL: str = "http://localhost:3000/provider"
    # Declined providers are not notified unless explicitly switched on
    NOTIFY_PROVIDER_DECLINED: bool = False
    NOTIFICATION_QUEUE_SIZE: int = 1000

    # --- Redemption ---
    # A redemption that takes longer than this is aborted and rolled back
    REDEMPTION_TIMEOUT_SECONDS: float = 10.0

    # --- Vouchers ---
    VOUCHER_EXPIRY_NOTICE_DAYS: int = 28

    # --- Finances report buckets ---
    # Quarter boundaries as (months, days) offsets from the first day of the quarter
    FINANCES_QUARTER_OFFSETS: list[tuple[int, int]] = [
        (0, 14), (1, 0), (1, 14), (2, 0), (2, 14),
    ]
    # Month boundaries as day offsets from the first day of the month
    FINANCES_MONTH_OFFSETS: list[int] = [4, 9, 14, 19, 24]
    # Upper bound on boundaries for the "all" window
    FINANCES_ALL_MAX_BUCKETS: int = 8


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
