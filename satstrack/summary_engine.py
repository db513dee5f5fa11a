from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Hashable, Iterable, Optional

from satstrack.currency_conversion import RateProvider, convert_amount, normalize_currency

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
PERCENT_PLACES = Decimal("0.01")
TRANSACTION_TYPES = {"income", "expense"}


@dataclass(frozen=True)
class GroupedTotal:
    """One SQL aggregate row: totals for a (group, type, currency) bucket."""

    type: str
    currency: str
    amount: Decimal
    satoshis: int = 0
    count: int = 0
    group: Optional[Hashable] = None


@dataclass(frozen=True)
class PeriodSummary:
    total_income: Decimal
    total_expenses: Decimal
    balance: Decimal
    transaction_count: int
    income_satoshis: int
    expense_satoshis: int
    net_satoshis: int
    source_currencies: list[str]


@dataclass(frozen=True)
class CategoryTotal:
    category_id: int
    category_name: str
    category_color: str
    total: Decimal
    satoshis: int
    count: int
    percentage: Decimal


@dataclass(frozen=True)
class MonthlyTrend:
    month: str
    income: Decimal
    expenses: Decimal
    income_satoshis: int
    expense_satoshis: int


def summarize(
    totals: Iterable[GroupedTotal],
    display_currency: str,
    rate_provider: RateProvider | None = None,
) -> PeriodSummary:
    income = ZERO
    expenses = ZERO
    income_sats = 0
    expense_sats = 0
    count = 0
    currencies: set[str] = set()
    for total in totals:
        txn_type = _normalize_type(total.type)
        currency = _safe_currency(total.currency, display_currency)
        currencies.add(currency)
        converted = _convert(total.amount, currency, display_currency, rate_provider)
        if txn_type == "income":
            income += converted
            income_sats += int(total.satoshis or 0)
        else:
            expenses += converted
            expense_sats += int(total.satoshis or 0)
        count += int(total.count or 0)

    return PeriodSummary(
        total_income=income,
        total_expenses=expenses,
        balance=income - expenses,
        transaction_count=count,
        income_satoshis=income_sats,
        expense_satoshis=expense_sats,
        net_satoshis=income_sats - expense_sats,
        source_currencies=sorted(currencies),
    )


def category_breakdown(
    totals: Iterable[GroupedTotal],
    categories: dict[int, tuple[str, str]],
    display_currency: str,
    rate_provider: RateProvider | None = None,
) -> list[CategoryTotal]:
    """Per-category totals with their share of the grand total.

    ``totals`` are grouped by category id; ``categories`` maps each id to its
    ``(name, color)``.
    """
    amounts: dict[int, Decimal] = {}
    satoshis: dict[int, int] = {}
    counts: dict[int, int] = {}
    for total in totals:
        if total.group is None:
            continue
        currency = _safe_currency(total.currency, display_currency)
        converted = _convert(total.amount, currency, display_currency, rate_provider)
        amounts[total.group] = amounts.get(total.group, ZERO) + converted
        satoshis[total.group] = satoshis.get(total.group, 0) + int(total.satoshis or 0)
        counts[total.group] = counts.get(total.group, 0) + int(total.count or 0)

    grand_total = sum(amounts.values(), ZERO)
    if grand_total <= ZERO:
        return []

    results: list[CategoryTotal] = []
    for category_id, amount in sorted(amounts.items(), key=lambda item: item[1], reverse=True):
        name, color = categories.get(category_id, ("Uncategorized", "#6B7280"))
        results.append(
            CategoryTotal(
                category_id=category_id,
                category_name=name,
                category_color=color,
                total=amount,
                satoshis=satoshis[category_id],
                count=counts[category_id],
                percentage=(amount / grand_total * HUNDRED).quantize(
                    PERCENT_PLACES, rounding=ROUND_HALF_UP
                ),
            )
        )
    return results


def monthly_trends(
    totals: Iterable[GroupedTotal],
    start_month: date,
    end_month: date,
    display_currency: str,
    rate_provider: RateProvider | None = None,
) -> list[MonthlyTrend]:
    """One bucket per month from ``start_month`` to ``end_month``.

    ``totals`` are grouped by a ``YYYY-MM`` month key. Months without
    transactions are present with zero totals.
    """
    if start_month > end_month:
        raise ValueError("start_month must be on or before end_month.")

    buckets: dict[str, dict[str, Decimal | int]] = {}
    for month in iter_months(start_month, end_month):
        buckets[month_key(month)] = {
            "income": ZERO,
            "expenses": ZERO,
            "income_satoshis": 0,
            "expense_satoshis": 0,
        }

    for total in totals:
        bucket = buckets.get(total.group)
        if bucket is None:
            continue
        currency = _safe_currency(total.currency, display_currency)
        converted = _convert(total.amount, currency, display_currency, rate_provider)
        if _normalize_type(total.type) == "income":
            bucket["income"] += converted
            bucket["income_satoshis"] += int(total.satoshis or 0)
        else:
            bucket["expenses"] += converted
            bucket["expense_satoshis"] += int(total.satoshis or 0)

    return [
        MonthlyTrend(
            month=key,
            income=values["income"],
            expenses=values["expenses"],
            income_satoshis=values["income_satoshis"],
            expense_satoshis=values["expense_satoshis"],
        )
        for key, values in buckets.items()
    ]


def trend_window(today: date, months: int) -> tuple[date, date]:
    if months < 1:
        raise ValueError("months must be at least 1.")
    return shift_month(today.replace(day=1), -(months - 1)), today


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def iter_months(start_value: date, end_value: date) -> list[date]:
    months: list[date] = []
    cursor = start_value.replace(day=1)
    end_month = end_value.replace(day=1)
    while cursor <= end_month:
        months.append(cursor)
        cursor = shift_month(cursor, 1)
    return months


def month_key(value: date) -> str:
    return value.strftime("%Y-%m")


def _normalize_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in TRANSACTION_TYPES:
        raise ValueError(f"Unsupported transaction type: {value}")
    return normalized


def _safe_currency(value: str | None, fallback: str) -> str:
    if not value:
        return fallback
    try:
        return normalize_currency(value)
    except ValueError:
        return fallback


def _convert(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_provider: RateProvider | None,
) -> Decimal:
    coerced = _coerce_amount(amount)
    try:
        return convert_amount(coerced, source_currency, target_currency, rate_provider)
    except ValueError as exc:
        logger.warning(
            "No rate from %s to %s, totalling %s unconverted: %s",
            source_currency,
            target_currency,
            coerced,
            exc,
        )
        return coerced


def _coerce_amount(amount: Decimal | int | float | str | None) -> Decimal:
    if amount is None:
        return ZERO
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
