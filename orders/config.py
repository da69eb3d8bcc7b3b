"""Runtime settings for the order placement core.

Settings are loaded from environment variables prefixed with ``ORDERS_``
(or a ``.env`` file), e.g. ``ORDERS_PAYMENT_TIMEOUT_SECS=5``.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class OrdersSettings(BaseSettings):
    """Configuration for wiring and tuning the placement workflow."""

    model_config = SettingsConfigDict(env_prefix="ORDERS_", env_file=".env", extra="ignore")

    # Storage
    storage: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite:///orders.db"
    echo_sql: bool = False

    # Domain
    currency: str = "EUR"
    reservation_ttl_secs: float = 900.0
    sweep_interval_secs: float = 30.0
    payment_timeout_secs: Optional[float] = 10.0
    idempotency_ttl_secs: Optional[float] = 86400.0

    # Downstream services
    use_http_adapters: bool = False
    payments_base_url: str = "http://payments:9002"
    notify_webhook_url: Optional[str] = None
    notify_workers: int = 4

    # HTTP resilience
    http_timeout_secs: float = 3.0
    http_retry_max: int = 3
    http_retry_backoff_base: float = 0.15
    http_retry_max_sleep: float = 0.5
    http_circuit_fail_threshold: int = 5
    http_circuit_reset_timeout: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


@lru_cache
def get_settings() -> OrdersSettings:
    """Return the process-wide settings instance."""
    return OrdersSettings()
