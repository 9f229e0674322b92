from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./orderflow.db"
    redis_url: str = "redis://localhost:6379/0"

    # Application URLs
    app_host: str = "http://localhost:8081"

    # Internal API security
    checkout_api_key: str = ""

    # SumUp configuration
    sumup_api_base_url: str = "https://api.sumup.com"
    sumup_client_id: str = ""
    sumup_client_secret: str = ""
    sumup_merchant_email: str = ""
    sumup_webhook_secret: str = ""
    provider_timeout_seconds: float = 10.0

    # Checkout coordination
    checkout_currency: str = "EUR"
    checkout_lock_backend: Literal["memory", "redis"] = "memory"
    checkout_lock_ttl_seconds: int = 30

    # Order automation
    auto_accept_orders: bool = False
    auto_accept_estimated_minutes: int = 20

    # Loyalty cycle scheduler
    loyalty_cycle_enabled: bool = False
    loyalty_cycle_cron: str = "0 2 * * *"
    loyalty_cycle_timezone: str = "Europe/Dublin"
    loyalty_cycle_trigger_label: str = "scheduler"
    loyalty_expiry_days: int = 90
    birthday_reward_threshold: float = 600.0

    # Telemetry
    otel_exporter_endpoint: str | None = None
    otel_exporter_headers: str | None = None

    @property
    def sumup_configured(self) -> bool:
        return bool(self.sumup_client_id and self.sumup_client_secret and self.sumup_merchant_email)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
