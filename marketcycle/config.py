"""
Service Configuration — One settings object for the whole orchestrator.

The settings manage:
  - Service-level settings (environment, log level, HTTP port)
  - Persistent store connection and key TTLs
  - Ranking feed and chain endpoints
  - Cycle timing, scheduler cadence, retry and gas policy
"""

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DAY = 24 * 60 * 60
HOUR = 60 * 60


class CycleSettings(BaseSettings):
    """Service-wide settings, read from the environment and ``.env`` files."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Service ──────────────────────────────────────────────────────
    service_name: str = "marketcycle"
    environment: Literal["development", "staging", "production"] = "development"
    port: int = 8080
    log_level: str = "INFO"
    json_logs: bool = False

    # ── Persistent store ─────────────────────────────────────────────
    store_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "market:"
    redis_socket_timeout_seconds: float = 5.0
    archive_key_prefix: str = "mindshare:archive:"
    cycle_record_ttl_seconds: int = 5 * DAY
    market_position_ttl_seconds: int = 5 * DAY
    mindshare_history_ttl_seconds: int = 5 * DAY
    deployment_lock_ttl_seconds: int = 300
    deployment_status_ttl_seconds: int = HOUR

    # ── Ranking feed ─────────────────────────────────────────────────
    ranking_feed_url: str = "https://hub.kaito.ai/api/v1/gateway/ai"
    ranking_feed_token: SecretStr = SecretStr("")
    ranking_top_n: int = 100
    ranking_duration: str = "7d"
    feed_health_cache_seconds: float = 300.0

    # ── Chain ────────────────────────────────────────────────────────
    rpc_url: str = "http://localhost:8545"
    chain_id: int = 84532
    signer_private_key: SecretStr = SecretStr("")
    factory_address: str = ""
    oracle_address: str = ""

    # ── Cycle timing ─────────────────────────────────────────────────
    cycle_duration_seconds: int = 72 * HOUR
    buffer_duration_seconds: int = HOUR
    genesis_window_seconds: int = 72 * HOUR

    # ── Scheduler ────────────────────────────────────────────────────
    ingestion_interval_seconds: float = HOUR
    status_check_interval_seconds: float = 5 * 60
    health_check_interval_seconds: float = 60
    ingestion_timeout_seconds: float = 20 * 60
    status_check_timeout_seconds: float = 20 * 60
    health_check_timeout_seconds: float = 10

    # ── Outbound calls ───────────────────────────────────────────────
    call_timeout_seconds: float = 30.0
    confirmation_timeout_seconds: float = 120.0
    retry_attempts: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0

    # ── Gas policy ───────────────────────────────────────────────────
    gas_limit_margin: float = 1.2
    max_fee_discount: float = 0.9
    min_priority_fee_wei: int = 1_000_000

    # ── Per-entity refresh batching ──────────────────────────────────
    refresh_min_batch_size: int = 1
    refresh_initial_batch_size: int = 5
    refresh_max_batch_size: int = 20
    refresh_min_delay_seconds: float = 0.5
    refresh_initial_delay_seconds: float = 1.0
    refresh_max_delay_seconds: float = 60.0
    refresh_max_attempts: int = 3

    # ── Derived ──────────────────────────────────────────────────────

    @property
    def cycle_duration(self) -> timedelta:
        return timedelta(seconds=self.cycle_duration_seconds)

    @property
    def buffer_duration(self) -> timedelta:
        return timedelta(seconds=self.buffer_duration_seconds)

    @property
    def genesis_window(self) -> timedelta:
        return timedelta(seconds=self.genesis_window_seconds)


@lru_cache
def get_settings() -> CycleSettings:
    """Singleton accessor — parsed once, cached forever."""
    return CycleSettings()
