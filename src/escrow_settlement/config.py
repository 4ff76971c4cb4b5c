"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup. Ledger settings are optional: without an RPC URL and contract
address the service starts with escrow features disabled.

Usage:
    from escrow_settlement.config import get_settings
    settings = get_settings()
    print(settings.rpc_url)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the escrow settlement engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    # Profiles (X-Profile-ID) allowed to release escrows to arbitrary addresses.
    admin_profile_ids: list[str] = []

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://escrow:escrow_dev"
        "@localhost:5432/escrow_settlement"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours

    # --- Ledger (escrow contract + chain node) ---
    rpc_url: str = ""
    escrow_contract_address: str = ""
    admin_private_key: str = ""
    ledger_chain_id: int | None = None
    ledger_max_gas: int = 5_000_000
    ledger_gas_buffer_percent: int = 20
    ledger_max_tx_cost_usd: Decimal = Decimal("100")
    # Reference price of the native coin, used only for the cost ceiling.
    ledger_native_usd_price: Decimal = Decimal("3000")
    ledger_read_timeout_seconds: float = 15.0
    ledger_tx_timeout_seconds: float = 180.0
    ledger_read_attempts: int = 3
    ledger_retry_backoff_seconds: float = 1.0
    ledger_log_chunk_size: int = 2000

    # --- Event Ingestor ---
    ingestor_enabled: bool = True
    ingestor_poll_interval_seconds: float = 5.0
    ingestor_workers: int = 4
    ingestor_confirmations: int = 0
    ingestor_queue_size: int = 1000

    # --- Reconciler ---
    reconciler_start_block: int = 0
    reconcile_on_startup: bool = False

    # --- Deadline Sweeper ---
    sweeper_enabled: bool = True
    sweeper_interval_seconds: float = 3600.0
    settlement_claim_ttl_seconds: int = 900

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def ledger_configured(self) -> bool:
        """True when enough is set to talk to the escrow contract."""
        return bool(self.rpc_url and self.escrow_contract_address)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
