from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from satstrack.currency_conversion import normalize_currency

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./satstrack.db"
    frontend_origin: str = "http://localhost:5173"
    jwt_secret: str = "change-me"
    jwt_expire_days: int = 30
    default_currency: str = "USD"
    owner_email: str = "owner@localhost"
    coingecko_api_url: str = "https://api.coingecko.com/api/v3"
    exchange_rate_api_url: str = "https://api.exchangerate-api.com/v4/latest/USD"
    price_cache_ttl_seconds: int = 60 * 60
    rate_cache_ttl_seconds: int = 60 * 60
    http_timeout_seconds: float = 8
    direct_price_currencies: frozenset[str] = field(
        default_factory=lambda: frozenset({"USD", "EUR"})
    )
    cross_rate_currencies: frozenset[str] = field(
        default_factory=lambda: frozenset({"RSD"})
    )
    log_level: str = "INFO"


def load_settings() -> Settings:
    defaults = Settings()
    return Settings(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", defaults.frontend_origin),
        jwt_secret=os.getenv("JWT_SECRET", defaults.jwt_secret),
        jwt_expire_days=_get_int("JWT_EXPIRE_DAYS", defaults.jwt_expire_days),
        default_currency=_get_currency("DEFAULT_CURRENCY", defaults.default_currency),
        owner_email=os.getenv("OWNER_EMAIL", defaults.owner_email).strip().lower(),
        coingecko_api_url=os.getenv("COINGECKO_API_URL", defaults.coingecko_api_url).rstrip("/"),
        exchange_rate_api_url=os.getenv("EXCHANGE_RATE_API_URL", defaults.exchange_rate_api_url),
        price_cache_ttl_seconds=_get_int(
            "PRICE_CACHE_TTL_SECONDS", defaults.price_cache_ttl_seconds
        ),
        rate_cache_ttl_seconds=_get_int("RATE_CACHE_TTL_SECONDS", defaults.rate_cache_ttl_seconds),
        http_timeout_seconds=_get_float("HTTP_TIMEOUT_SECONDS", defaults.http_timeout_seconds),
        direct_price_currencies=_get_currency_set(
            "DIRECT_PRICE_CURRENCIES", defaults.direct_price_currencies
        ),
        cross_rate_currencies=_get_currency_set(
            "CROSS_RATE_CURRENCIES", defaults.cross_rate_currencies
        ),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).strip().upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("satstrack").setLevel(level)


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_currency(name: str, default: str) -> str:
    raw = os.getenv(name, default)
    try:
        return normalize_currency(raw)
    except ValueError:
        return default


def _get_currency_set(name: str, default: frozenset[str]) -> frozenset[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    codes = set()
    for part in raw.split(","):
        if not part.strip():
            continue
        try:
            codes.add(normalize_currency(part))
        except ValueError:
            continue
    return frozenset(codes)
