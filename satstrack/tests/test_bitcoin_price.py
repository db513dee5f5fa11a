import unittest
from datetime import date
from decimal import Decimal

from satstrack.bitcoin_price import (
    BitcoinPriceService,
    amount_to_satoshis,
    fallback_price,
    format_bitcoin_price,
    format_satoshis,
    satoshis_to_amount,
)
from satstrack.currency_conversion import RateProviderUnavailable, StaticRateProvider
from satstrack.tests.fakes import FakeClock, FakeFetch

TODAY = date(2024, 6, 15)
PAST = date(2024, 1, 15)

HISTORY_PAYLOAD = {"market_data": {"current_price": {"usd": 30000.5, "eur": 27000}}}
SIMPLE_PAYLOAD = {"bitcoin": {"usd": 60000, "eur": 55000.25}}


class SatoshiConversionTests(unittest.TestCase):
    def test_one_bitcoin_worth_of_currency(self) -> None:
        self.assertEqual(amount_to_satoshis(45000, 45000), 100_000_000)

    def test_rounds_half_up(self) -> None:
        self.assertEqual(amount_to_satoshis(Decimal("0.000000005"), 1), 1)
        self.assertEqual(amount_to_satoshis(1, 3), 33_333_333)

    def test_satoshis_to_amount(self) -> None:
        self.assertEqual(satoshis_to_amount(50_000_000, Decimal("60000")), Decimal("30000"))

    def test_round_trip_within_rounding(self) -> None:
        for satoshis in (1, 999, 123_456, 100_000_000, 2_100_000_000_000):
            for price in (Decimal("1"), Decimal("27123.45"), Decimal("4950000")):
                amount = satoshis_to_amount(satoshis, price)
                self.assertEqual(amount_to_satoshis(amount, price), satoshis)

    def test_non_positive_price_raises(self) -> None:
        with self.assertRaises(ValueError):
            amount_to_satoshis(10, 0)
        with self.assertRaises(ValueError):
            satoshis_to_amount(10, -1)


class FormatSatoshisTests(unittest.TestCase):
    def test_thresholds(self) -> None:
        self.assertEqual(format_satoshis(0), "0 sats")
        self.assertEqual(format_satoshis(999), "999 sats")
        self.assertEqual(format_satoshis(1000), "1.0K sats")
        self.assertEqual(format_satoshis(1500), "1.5K sats")
        self.assertEqual(format_satoshis(2_500_000), "2.50M sats")
        self.assertEqual(format_satoshis(100_000_000), "₿1.00000000")
        self.assertEqual(format_satoshis(150_000_000), "₿1.50000000")

    def test_format_bitcoin_price(self) -> None:
        self.assertEqual(format_bitcoin_price(Decimal("43251.67"), "USD"), "$43,252")
        self.assertEqual(format_bitcoin_price(Decimal("4950000"), "RSD"), "4,950,000 дин.")


class BitcoinPriceServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.fetch = FakeFetch(
            {"/coins/bitcoin/history": HISTORY_PAYLOAD, "/simple/price": SIMPLE_PAYLOAD}
        )
        self.clock = FakeClock()
        self.service = self._service()

    def _service(self, rate_provider=None) -> BitcoinPriceService:
        return BitcoinPriceService(
            rate_provider=rate_provider
            or StaticRateProvider(rates={"USD": Decimal("1"), "RSD": Decimal("100")}),
            fetch_json=self.fetch,
            clock=self.clock,
            today=lambda: TODAY,
        )

    def test_historical_price_is_cached(self) -> None:
        first = self.service.price_for_date(PAST, "USD")
        second = self.service.price_for_date(PAST, "usd")

        self.assertEqual(first, Decimal("30000.50"))
        self.assertEqual(second, first)
        self.assertEqual(self.fetch.count("/coins/bitcoin/history"), 1)
        self.assertIn("date=15-01-2024", self.fetch.calls[0])

    def test_historical_entries_never_expire(self) -> None:
        self.service.price_for_date(PAST, "USD")
        self.clock.advance(30 * 24 * 60 * 60)
        self.service.price_for_date(PAST, "USD")

        self.assertEqual(self.fetch.count("/coins/bitcoin/history"), 1)

    def test_each_date_fetched_separately(self) -> None:
        self.service.price_for_date(PAST, "USD")
        self.service.price_for_date(date(2024, 1, 16), "USD")

        self.assertEqual(self.fetch.count("/coins/bitcoin/history"), 2)

    def test_directly_supported_currency(self) -> None:
        self.assertEqual(self.service.price_for_date(PAST, "EUR"), Decimal("27000.00"))

    def test_cross_rate_currency_uses_usd_price(self) -> None:
        price = self.service.price_for_date(PAST, "RSD")

        self.assertEqual(price, Decimal("3000050.00"))

    def test_other_unsupported_currency_returns_usd_price(self) -> None:
        self.assertEqual(
            self.service.price_for_date(PAST, "GBP"),
            self.service.price_for_date(PAST, "USD"),
        )

    def test_fetch_failure_returns_fallback_without_caching(self) -> None:
        self.fetch.fail = True
        self.assertEqual(self.service.price_for_date(PAST, "USD"), fallback_price("USD"))

        self.fetch.fail = False
        self.assertEqual(self.service.price_for_date(PAST, "USD"), Decimal("30000.50"))
        self.assertEqual(self.fetch.count("/coins/bitcoin/history"), 2)

    def test_missing_field_returns_fallback(self) -> None:
        self.fetch.responses["/coins/bitcoin/history"] = {"market_data": {}}

        self.assertEqual(self.service.price_for_date(PAST, "EUR"), fallback_price("EUR"))

    def test_rate_failure_returns_currency_fallback(self) -> None:
        class UnavailableRates:
            def get_rate(self, currency: str) -> Decimal:
                raise RateProviderUnavailable("Down")

        service = self._service(rate_provider=UnavailableRates())

        self.assertEqual(service.price_for_date(PAST, "RSD"), fallback_price("RSD"))

    def test_unknown_currency_fallback_uses_default_constant(self) -> None:
        self.fetch.fail = True

        self.assertEqual(self.service.current_price("XYZ"), Decimal("45000"))

    def test_current_price_refetched_after_an_hour(self) -> None:
        self.assertEqual(self.service.current_price("USD"), Decimal("60000.00"))
        self.clock.advance(59 * 60)
        self.service.current_price("USD")
        self.assertEqual(self.fetch.count("/simple/price"), 1)

        self.clock.advance(60)
        self.service.current_price("USD")
        self.assertEqual(self.fetch.count("/simple/price"), 2)

    def test_spot_price_is_not_kept_as_history_after_midnight(self) -> None:
        current_day = [TODAY]
        service = BitcoinPriceService(
            rate_provider=StaticRateProvider(),
            fetch_json=self.fetch,
            clock=self.clock,
            today=lambda: current_day[0],
        )
        self.assertEqual(service.current_price("USD"), Decimal("60000.00"))

        current_day[0] = date(2024, 6, 16)

        self.assertEqual(service.price_for_date(TODAY, "USD"), Decimal("30000.50"))
        self.assertEqual(service.price_for_date(TODAY, "USD"), Decimal("30000.50"))
        self.assertEqual(self.fetch.count("/coins/bitcoin/history"), 1)

    def test_current_price_requests_currency(self) -> None:
        self.assertEqual(self.service.current_price("EUR"), Decimal("55000.25"))
        self.assertIn("vs_currencies=eur", self.fetch.calls[0])

    def test_today_is_served_as_current_price(self) -> None:
        self.assertEqual(self.service.price_for_date(TODAY, "USD"), Decimal("60000.00"))
        self.assertEqual(self.fetch.count("/coins/bitcoin/history"), 0)

    def test_invalid_currency_code_raises(self) -> None:
        with self.assertRaises(ValueError):
            self.service.price_for_date(PAST, "dollars")


if __name__ == "__main__":
    unittest.main()
