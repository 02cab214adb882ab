"""
Flux Console Configuration
"""
from typing import Union

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Backend API
    API_BASE: str = ""  # e.g. https://flux-api.example.com (empty = not configured)
    API_TOKEN: str = ""  # Bearer token for /api/user/* endpoints
    TRADING_MODE: str = "paper"
    USER_AGENT: str = "Flux-Console/1.0"

    # Request bounds
    REQUEST_TIMEOUT_S: float = 15.0  # Hard cap on a single request
    CONNECT_TIMEOUT_S: float = 5.0
    DIAGNOSTIC_MAX_CHARS: int = 200  # Truncate error bodies in FetchError

    # Polling
    POLL_INTERVAL_S: float = 10.0
    MIN_POLL_INTERVAL_S: float = 3.0  # Floor to bound backend load

    # Change detection
    FINGERPRINT_PRECISION: int = 4  # Decimal places kept before digesting floats

    # Optimize workspace
    PRESELECT_CONFIDENCE: float = 0.7  # Suggestions at or above are pre-selected on first load
    LOOKBACK_DAYS: int = 30

    # Dashboard lookbacks
    TRADE_LOOKBACK: Union[int, str] = 10  # Row count, or "today" / "week"
    SHADOW_LOOKBACK: Union[int, str] = 10  # Row count, or "all"
    CHART_DAYS: int = 14

    # Freshness tiers (seconds since last refresh)
    FRESH_AFTER_S: float = 30.0
    STALE_AFTER_S: float = 120.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
