from __future__ import annotations

from decimal import Decimal
from functools import cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ARTIFACTS_DIR = PROJECT_ROOT / "artifacts"
DB_FILE = ARTIFACTS_DIR / "portfolio.db"


class AppSettings(BaseSettings):
    database_url: str = f"sqlite:///{DB_FILE}"
    base_currency: str = "USD"

    # Transfer matching. A window of 0 only pairs legs sharing the exact timestamp.
    transfer_match_window_seconds: int = 0
    transfer_quantity_epsilon: Decimal = Decimal("0.000001")
    transfer_fee_tolerance: Decimal = Decimal("0")
    transfer_fee_tolerance_ratio: Decimal = Decimal("0.01")

    reconcile_epsilon: Decimal = Decimal("0.000000001")

    price_refresh_interval_minutes: int = 60
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
