from __future__ import annotations

from functools import cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    database_url: str = "sqlite:///exchange_ledger.db"
    credentials_key: str = ""
    coindesk_api_key: str = ""
    moralis_api_key: str = ""
    price_cache_dir: str = ".cache/prices"

    sync_workers: int = 4
    sync_job_attempts: int = 2
    sync_job_backoff_seconds: float = 10.0

    binance_requests_per_second: float = 10.0
    okx_requests_per_second: float = 5.0
    bybit_requests_per_second: float = 10.0
    moralis_requests_per_second: float = 1.0
    coindesk_requests_per_second: float = 5.0

    # Reconciliation heuristics; tunable, not business rules.
    reconciliation_deposit_window_seconds: int = 3600
    reconciliation_withdrawal_window_seconds: int = 7200
    reconciliation_amount_tolerance: float = 0.02
    reconciliation_amount_weight: float = 0.7
    reconciliation_time_weight: float = 0.3
    offramp_window_seconds: int = 86400

    long_term_holding_days: int = 365

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
