"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # CORS: comma-separated list. Empty = default list in app.main.
    cors_origins: str = ""
    # Proxies whose X-Forwarded-For is trusted (comma-separated)
    trusted_proxy_ips: str = ""

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # YOOKASSA (payment gateway)
    # ===========================================
    yookassa_shop_id: str  # Required, no default
    yookassa_secret_key: str  # Required, no default
    yookassa_api_url: str = "https://api.yookassa.ru/v3"
    # Where the gateway sends the user after checkout (bot deep link)
    yookassa_return_url: str = "https://t.me/"
    yookassa_timeout: float = 10.0
    yookassa_retry_max_attempts: int = 3
    yookassa_retry_backoff_seconds: float = 1.0
    # Reject webhooks from outside YooKassa's published networks
    yookassa_verify_webhook_ip: bool = False
    yookassa_webhook_allowed_ips: str = (
        "185.71.76.0/27,185.71.77.0/27,77.75.153.0/25,77.75.156.11,"
        "77.75.156.35,77.75.154.128/25,2a02:5180::/32"
    )
    currency: str = "RUB"

    # ===========================================
    # BILLING
    # ===========================================
    # Price of one generation, minor units (kopecks)
    generation_cost: int = 15000
    # Top-up denominations in whole rubles, shown in this order
    topup_amounts: str = "300,750,1500,3000,7500,15000"
    # Refund the debit when our own post-processing fails after a successful provider call
    refund_on_postprocess_failure: bool = True

    # ===========================================
    # PAYMENT RECONCILIATION
    # ===========================================
    payment_poll_min_age_minutes: int = 2
    payment_pending_ttl_hours: int = 24
    # Webhook may arrive before the pending transaction is committed
    webhook_reconcile_max_retries: int = 5
    webhook_reconcile_retry_delay: int = 10

    # ===========================================
    # IMAGE GENERATION (OpenAI)
    # ===========================================
    openai_api_key: str = ""
    openai_image_model: str = "gpt-image-1"
    openai_request_timeout: float = 120.0
    image_size: str = "1024x1024"
    image_generation_retry_max_attempts: int = 2
    image_generation_retry_backoff_seconds: float = 2.0
    image_generation_retry_respect_retry_after: bool = True
    storage_base_path: str = "/data/generated_images"

    # ===========================================
    # LEGACY IMPORT
    # ===========================================
    legacy_snapshot_path: str = "data.json"
    # Legacy generations without an explicit cost, rubles
    legacy_default_generation_cost_rub: int = 75

    # ===========================================
    # ADMIN
    # ===========================================
    admin_api_key: str | None = None  # Optional, but recommended
    # Telegram ids bootstrapped with the admin role (comma-separated)
    admin_telegram_ids: str = ""

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING
    # ===========================================
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    # ===========================================
    # STATE MANAGEMENT
    # ===========================================
    idempotency_ttl: int = 300  # 5 minutes
    topup_click_guard_seconds: int = 5

    @field_validator("topup_amounts")
    @classmethod
    def validate_topup_amounts(cls, v: str) -> str:
        """Denominations must be positive integers."""
        for part in v.split(","):
            part = part.strip()
            if not part:
                continue
            if not part.isdigit() or int(part) <= 0:
                raise ValueError(f"invalid top-up amount: {part!r}")
        return v

    @field_validator("generation_cost")
    @classmethod
    def validate_generation_cost(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("generation_cost must be positive")
        return v

    @property
    def topup_amounts_list(self) -> list[int]:
        """Top-up denominations (rubles) in display order."""
        return [int(p.strip()) for p in self.topup_amounts.split(",") if p.strip()]

    @property
    def admin_telegram_ids_set(self) -> set[str]:
        return {t.strip() for t in self.admin_telegram_ids.split(",") if t.strip()}

    @property
    def trusted_proxy_ips_set(self) -> set[str]:
        return {ip.strip() for ip in self.trusted_proxy_ips.split(",") if ip.strip()}

    @property
    def webhook_allowed_networks(self) -> list[str]:
        return [n.strip() for n in self.yookassa_webhook_allowed_ips.split(",") if n.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
