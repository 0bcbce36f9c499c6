"""Tests for order and cart pricing."""

from pricing import compute_totals, format_cents, percent_of


class TestComputeTotals:
    def test_free_shipping_over_threshold(self):
        totals = compute_totals(6000 + 5000)
        assert totals["subtotal_cents"] == 11000
        assert totals["tax_cents"] == 1100
        assert totals["shipping_cents"] == 0
        assert totals["total_cents"] == 12100

    def test_flat_shipping_under_threshold(self):
        totals = compute_totals(4000)
        assert totals == {
            "subtotal_cents": 4000,
            "tax_cents": 400,
            "shipping_cents": 1000,
            "total_cents": 5400,
            "currency": "usd",
        }

    def test_threshold_itself_still_pays_shipping(self):
        assert compute_totals(10000)["shipping_cents"] == 1000

    def test_rules_come_from_settings(self, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "tax_rate_bps", 825)
        monkeypatch.setattr(test_settings, "flat_shipping_cents", 599)
        totals = compute_totals(2000)
        assert totals["tax_cents"] == 165
        assert totals["total_cents"] == 2000 + 165 + 599


class TestPercentOf:
    def test_rounds_half_up(self):
        # 10% of 5 cents is 0.5 cents
        assert percent_of(5, 1000) == 1
        assert percent_of(4, 1000) == 0

    def test_zero_rate(self):
        assert percent_of(12345, 0) == 0


def test_format_cents():
    assert format_cents(12100) == "121.00 USD"
    assert format_cents(5, "eur") == "0.05 EUR"
