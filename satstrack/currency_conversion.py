from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import json
import logging
import time
from typing import Callable, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"
EXCHANGE_RATE_API_URL = "https://api.exchangerate-api.com/v4/latest/USD"

# Target currency per 1 USD, used when the live table cannot be fetched.
FALLBACK_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.85"),
    "RSD": Decimal("110"),
}


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    name: str
    symbol: str


SUPPORTED_CURRENCIES: dict[str, CurrencyInfo] = {
    "USD": CurrencyInfo(code="USD", name="US Dollar", symbol="$"),
    "EUR": CurrencyInfo(code="EUR", name="Euro", symbol="€"),
    "RSD": CurrencyInfo(code="RSD", name="Serbian Dinar", symbol="дин."),
}


def http_get_json(url: str, timeout: float = 8) -> object:
    """GET ``url`` and decode the JSON body.

    Raises ``OSError`` or ``ValueError`` subclasses on network or decoding
    failures; callers translate those into their own unavailable errors.
    """
    request = Request(url, headers={"Accept": "application/json"})
    with urlopen(request, timeout=timeout) as response:
        return json.load(response)


FETCH_ERRORS = (HTTPError, URLError, TimeoutError, OSError, json.JSONDecodeError, ValueError)


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or FALLBACK_RATES))

    def get_rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        try:
            return self.rates[normalized]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized}") from exc


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    fetched_at: float


@dataclass
class ExchangeRateApiProvider:
    """USD-based live rates, refreshed once the cached table is older than the TTL."""

    url: str = EXCHANGE_RATE_API_URL
    cache_ttl_seconds: int = 60 * 60
    timeout: float = 8
    fetch_json: Callable[..., object] = http_get_json
    clock: Callable[[], float] = time.time
    _cache: CachedRates | None = field(default=None, repr=False)

    def get_rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        if normalized == BASE_CURRENCY:
            return Decimal("1")
        rates = self._get_rates()
        try:
            return rates[normalized]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized}") from exc

    def _get_rates(self) -> Mapping[str, Decimal]:
        now = self.clock()
        cached = self._cache
        if cached and now - cached.fetched_at < self.cache_ttl_seconds:
            return cached.rates

        rates = self._fetch_rates()
        self._cache = CachedRates(rates=rates, fetched_at=now)
        return rates

    def _fetch_rates(self) -> Mapping[str, Decimal]:
        logger.debug("Fetching exchange rates from %s", self.url)
        try:
            payload = self.fetch_json(self.url, timeout=self.timeout)
        except FETCH_ERRORS as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Exchange rate response missing rates")

        parsed: dict[str, Decimal] = {}
        for code, value in rates.items():
            try:
                parsed[normalize_currency(code)] = Decimal(str(value))
            except (ValueError, ArithmeticError):
                continue
        parsed[BASE_CURRENCY] = Decimal("1")
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: StaticRateProvider | ExchangeRateApiProvider
    fallback: StaticRateProvider

    def get_rate(self, currency: str) -> Decimal:
        try:
            return self.primary.get_rate(currency)
        except RateProviderUnavailable as exc:
            logger.warning("Using fallback rate for %s: %s", currency, exc)
            return self.fallback.get_rate(currency)


RateProvider = StaticRateProvider | ExchangeRateApiProvider | CompositeRateProvider


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_provider: RateProvider | None = None,
) -> Decimal:
    """Convert a monetary amount for display, going through USD."""
    provider = rate_provider or StaticRateProvider()
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    source_rate = provider.get_rate(normalized_source)
    target_rate = provider.get_rate(normalized_target)
    amount_in_usd = coerced_amount / source_rate
    return amount_in_usd * target_rate


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def is_supported_currency(value: str | None) -> bool:
    if not value:
        return False
    try:
        return normalize_currency(value) in SUPPORTED_CURRENCIES
    except ValueError:
        return False


def currency_symbol(currency: str) -> str:
    info = SUPPORTED_CURRENCIES.get(currency)
    return info.symbol if info else currency


def currency_name(currency: str) -> str:
    info = SUPPORTED_CURRENCIES.get(currency)
    return info.name if info else currency


def format_currency(
    amount: Decimal | int | float | str, currency: str = BASE_CURRENCY, places: int = 2
) -> str:
    value = _coerce_amount(amount)
    info = SUPPORTED_CURRENCIES.get(currency)
    if not info:
        return f"{value:.{places}f} {currency}"

    formatted = f"{value:,.{places}f}"
    if currency == "RSD":
        return f"{formatted} {info.symbol}"
    return f"{info.symbol}{formatted}"


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
