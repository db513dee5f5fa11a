from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import logging
import time
from typing import Callable
from urllib.parse import urlencode

from satstrack.currency_conversion import (
    BASE_CURRENCY,
    FETCH_ERRORS,
    CompositeRateProvider,
    ExchangeRateApiProvider,
    RateProviderUnavailable,
    StaticRateProvider,
    format_currency,
    http_get_json,
    normalize_currency,
)

logger = logging.getLogger(__name__)

SATOSHIS_PER_BTC = 100_000_000
COINGECKO_API_URL = "https://api.coingecko.com/api/v3"
COIN_ID = "bitcoin"
CURRENT_PRICE_TTL_SECONDS = 60 * 60
CENT = Decimal("0.01")

DEFAULT_FALLBACK_PRICE = Decimal("45000")
FALLBACK_PRICES: dict[str, Decimal] = {
    "USD": Decimal("45000"),
    "EUR": Decimal("38250"),
    "RSD": Decimal("4950000"),
}


class PriceProviderUnavailable(RuntimeError):
    """Raised when the price API cannot return a usable Bitcoin price."""


@dataclass(frozen=True)
class PriceCacheEntry:
    price: Decimal
    fetched_at: float
    historical: bool = False


def fallback_price(currency: str) -> Decimal:
    return FALLBACK_PRICES.get(currency, DEFAULT_FALLBACK_PRICE)


@dataclass
class BitcoinPriceService:
    """Bitcoin price lookups with an in-memory ``(date, currency)`` cache.

    Historical prices never change once fetched, so past-date entries are kept
    for the lifetime of the service. Today's entry doubles as the current price
    and is refetched once it is older than ``current_ttl_seconds``. Once that
    day is in the past its spot entry is replaced by the history endpoint's
    price on the next lookup.

    Currencies in ``direct_currencies`` are requested from the price API as-is.
    Currencies in ``cross_rate_currencies`` are derived from the USD price and
    the USD rate table. Any other currency gets the plain USD price.

    Lookups never raise on upstream failures: a fixed per-currency fallback
    price is returned instead and nothing is cached.
    """

    rate_provider: StaticRateProvider | ExchangeRateApiProvider | CompositeRateProvider = field(
        default_factory=lambda: CompositeRateProvider(
            primary=ExchangeRateApiProvider(), fallback=StaticRateProvider()
        )
    )
    base_url: str = COINGECKO_API_URL
    direct_currencies: frozenset[str] = frozenset({"USD", "EUR"})
    cross_rate_currencies: frozenset[str] = frozenset({"RSD"})
    current_ttl_seconds: int = CURRENT_PRICE_TTL_SECONDS
    timeout: float = 8
    fetch_json: Callable[..., object] = http_get_json
    clock: Callable[[], float] = time.time
    today: Callable[[], date] = date.today
    _cache: dict[tuple[date, str], PriceCacheEntry] = field(default_factory=dict, repr=False)

    def price_for_date(self, day: date, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        if day >= self.today():
            return self.current_price(normalized)
        try:
            return self._resolve(day, normalized, self._historical_price)
        except (PriceProviderUnavailable, RateProviderUnavailable) as exc:
            logger.warning(
                "Bitcoin price for %s in %s unavailable, using fallback: %s",
                day.isoformat(),
                normalized,
                exc,
            )
            return fallback_price(normalized)

    def current_price(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        try:
            return self._resolve(self.today(), normalized, self._current_price)
        except (PriceProviderUnavailable, RateProviderUnavailable) as exc:
            logger.warning(
                "Current Bitcoin price in %s unavailable, using fallback: %s", normalized, exc
            )
            return fallback_price(normalized)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _resolve(
        self, day: date, currency: str, lookup: Callable[[date, str], Decimal]
    ) -> Decimal:
        if currency in self.direct_currencies:
            return lookup(day, currency)

        usd_price = lookup(day, BASE_CURRENCY)
        if currency not in self.cross_rate_currencies:
            return usd_price
        try:
            rate = self.rate_provider.get_rate(currency)
        except ValueError as exc:
            raise RateProviderUnavailable(f"No USD rate for {currency}") from exc
        return _to_price(usd_price * rate)

    def _historical_price(self, day: date, currency: str) -> Decimal:
        key = (day, currency)
        cached = self._cache.get(key)
        if cached and cached.historical:
            return cached.price

        query = urlencode({"date": day.strftime("%d-%m-%Y"), "localization": "false"})
        url = f"{self.base_url}/coins/{COIN_ID}/history?{query}"
        payload = self._fetch(url)
        market_data = payload.get("market_data") if isinstance(payload, dict) else None
        prices = market_data.get("current_price") if isinstance(market_data, dict) else None
        price = _extract_price(prices, currency)
        self._cache[key] = PriceCacheEntry(
            price=price, fetched_at=self.clock(), historical=True
        )
        return price

    def _current_price(self, day: date, currency: str) -> Decimal:
        key = (day, currency)
        now = self.clock()
        cached = self._cache.get(key)
        if cached and now - cached.fetched_at < self.current_ttl_seconds:
            return cached.price

        query = urlencode({"ids": COIN_ID, "vs_currencies": currency.lower()})
        url = f"{self.base_url}/simple/price?{query}"
        payload = self._fetch(url)
        prices = payload.get(COIN_ID) if isinstance(payload, dict) else None
        price = _extract_price(prices, currency)
        self._cache[key] = PriceCacheEntry(price=price, fetched_at=now)
        return price

    def _fetch(self, url: str) -> object:
        logger.debug("Fetching Bitcoin price from %s", url)
        try:
            return self.fetch_json(url, timeout=self.timeout)
        except FETCH_ERRORS as exc:
            raise PriceProviderUnavailable(f"Price API request failed: {exc}") from exc


def amount_to_satoshis(
    amount: Decimal | int | float | str, price: Decimal | int | float | str
) -> int:
    """Satoshis worth ``amount`` at ``price`` (both in the same currency), rounded half-up."""
    coerced_price = _coerce(price)
    if coerced_price <= 0:
        raise ValueError("Bitcoin price must be greater than zero.")
    satoshis = _coerce(amount) / coerced_price * SATOSHIS_PER_BTC
    return int(satoshis.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def satoshis_to_amount(satoshis: int, price: Decimal | int | float | str) -> Decimal:
    coerced_price = _coerce(price)
    if coerced_price <= 0:
        raise ValueError("Bitcoin price must be greater than zero.")
    return Decimal(satoshis) / SATOSHIS_PER_BTC * coerced_price


def format_satoshis(satoshis: int) -> str:
    if satoshis >= SATOSHIS_PER_BTC:
        btc = Decimal(satoshis) / SATOSHIS_PER_BTC
        return f"₿{_round(btc, '0.00000001')}"
    if satoshis >= 1_000_000:
        return f"{_round(Decimal(satoshis) / 1_000_000, '0.01')}M sats"
    if satoshis >= 1_000:
        return f"{_round(Decimal(satoshis) / 1_000, '0.1')}K sats"
    return f"{satoshis:,} sats"


def format_bitcoin_price(price: Decimal | int | float | str, currency: str = BASE_CURRENCY) -> str:
    return format_currency(_round(_coerce(price), "1"), currency, places=0)


def _extract_price(prices: object, currency: str) -> Decimal:
    if not isinstance(prices, dict):
        raise PriceProviderUnavailable("Price response missing price table")
    value = prices.get(currency.lower())
    if value is None:
        raise PriceProviderUnavailable(f"Price response missing {currency.lower()} price")
    try:
        price = _to_price(Decimal(str(value)))
    except InvalidOperation as exc:
        raise PriceProviderUnavailable(f"Invalid price value: {value!r}") from exc
    if price <= 0:
        raise PriceProviderUnavailable(f"Invalid price value: {value!r}")
    return price


def _to_price(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _round(value: Decimal, places: str) -> Decimal:
    return value.quantize(Decimal(places), rounding=ROUND_HALF_UP)


def _coerce(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
