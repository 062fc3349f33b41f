# marketfeed/config.py
import os
from dataclasses import dataclass, field
from datetime import time
from typing import Dict, List, Optional

from dotenv import load_dotenv

from marketfeed.market.symbols import DEFAULT_INDEX_SYMBOLS, DEFAULT_REFRESH_MINUTES, DEFAULT_SYMBOLS
from marketfeed.models.market import Tier

# Loads variables from a local .env file into environment variables (dev only).
load_dotenv()


@dataclass(frozen=True)
class Settings:
    # App config
    app_env: str
    log_level: str

    # Provider config (TWELVEDATA or SIMULATED)
    provider: str
    twelvedata_api_key: str
    twelvedata_base_url: str
    fetch_timeout_seconds: float

    # Tiers
    refresh_minutes: Dict[Tier, int]
    tier_symbols: Dict[Tier, List[str]]
    index_symbols: List[str]

    # Shared provider budget
    rate_limit_per_minute: int

    # Venue hours
    market_timezone: str
    market_open: time
    market_close: time
    market_grace_minutes: int

    # Index jobs
    eod_snapshot_time: time
    history_reload_days: int
    history_lookback_days: int

    # Storage
    db_path: str
    redis_url: Optional[str] = None

    alert_purge_days: int = field(default=30)
    log_dir: Optional[str] = None


def _csv(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return list(default)
    return [s.strip().upper() for s in raw.split(",") if s.strip()]


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


def _hhmm(name: str, default: str) -> time:
    raw = (os.getenv(name) or default).strip()
    try:
        return time.fromisoformat(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must look like HH:MM, got {raw!r}") from e


def get_settings() -> Settings:
    """
    Reads env vars and returns a Settings object.
    """
    provider = os.getenv("PROVIDER", "TWELVEDATA").strip().upper()
    api_key = os.getenv("TWELVEDATA_API_KEY", "").strip()
    if provider == "TWELVEDATA" and not api_key:
        raise RuntimeError("TWELVEDATA_API_KEY is missing. Add it to .env")

    refresh_minutes = {
        tier: _int(f"{tier.name}_REFRESH_MINUTES", DEFAULT_REFRESH_MINUTES[tier]) for tier in Tier
    }
    tier_symbols = {tier: _csv(f"{tier.name}_SYMBOLS", DEFAULT_SYMBOLS[tier]) for tier in Tier}

    redis_url = os.getenv("REDIS_URL", "").strip() or None

    return Settings(
        app_env=os.getenv("APP_ENV", "local"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        provider=provider,
        twelvedata_api_key=api_key,
        twelvedata_base_url=os.getenv("TWELVEDATA_BASE_URL", "https://api.twelvedata.com"),
        fetch_timeout_seconds=float(os.getenv("FETCH_TIMEOUT_SECONDS", "20")),
        refresh_minutes=refresh_minutes,
        tier_symbols=tier_symbols,
        index_symbols=_csv("INDEX_SYMBOLS", DEFAULT_INDEX_SYMBOLS),
        rate_limit_per_minute=_int("RATE_LIMIT_PER_MINUTE", 8),
        market_timezone=os.getenv("MARKET_TIMEZONE", "America/New_York"),
        market_open=_hhmm("MARKET_OPEN", "09:30"),
        market_close=_hhmm("MARKET_CLOSE", "16:00"),
        market_grace_minutes=_int("MARKET_GRACE_MINUTES", 15),
        eod_snapshot_time=_hhmm("EOD_SNAPSHOT_TIME", "17:00"),
        history_reload_days=_int("HISTORY_RELOAD_DAYS", 30),
        history_lookback_days=_int("HISTORY_LOOKBACK_DAYS", 730),
        db_path=os.path.expanduser(os.getenv("DB_PATH", "~/.marketfeed/marketfeed.db")),
        redis_url=redis_url,
        alert_purge_days=_int("ALERT_PURGE_DAYS", 30),
        log_dir=os.getenv("LOG_DIR", "").strip() or None,
    )
