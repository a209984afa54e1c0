"""
Wallet configuration
Loads environment variables (prefix ``WALLET_``) and an optional .env file.
"""

from decimal import Decimal
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_env_file() -> Optional[str]:
    if Path(".env").exists():
        return ".env"
    return None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WALLET_",
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Money
    amount_decimals: int = 8
    # Largest single amount or balance; keeps every value within Decimal's 28-digit context
    max_amount: Decimal = Decimal("1000000000000000000")
    max_conflict_retries: int = 3

    # Price feed
    price_source: Literal["static", "http"] = "static"
    # Used when price_source is "static", e.g. WALLET_STATIC_PRICES='{"BTC": "50000"}'
    static_prices: dict[str, Decimal] = {}
    price_cache_seconds: float = 12.0
    price_max_stale_seconds: float = 3600.0
    price_timeout_seconds: float = 3.5
    coingecko_url: str = "https://api.coingecko.com/api/v3/simple/price"
    binance_url: str = "https://api.binance.com/api/v3/ticker/price"

    cors_origins: list[str] = ["*"]


settings = Settings()
