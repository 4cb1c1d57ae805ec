"""Tests for symbol validation, price parsing and delivery records."""

from decimal import Decimal

import pytest

from app.streaming.errors import TransientReadError, ValidationError
from app.streaming.models import (
    PriceDelivery,
    PriceSample,
    format_price,
    normalize_symbol,
    parse_price,
    stream_id_for,
)


class TestNormalizeSymbol:
    """Unit tests for the symbol validation rule."""

    def test_trims_and_uppercases(self):
        """Test that symbols are trimmed and upper-cased."""
        assert normalize_symbol("  btcusd ") == "BTCUSD"

    def test_accepts_bounds(self):
        """Test the 3 and 15 character bounds."""
        assert normalize_symbol("AAA") == "AAA"
        assert normalize_symbol("A" * 15) == "A" * 15

    @pytest.mark.parametrize("raw", ["", "   ", None, "AB", "A" * 16, "BTC-USD", "BTC USD", "X:BTCUSD"])
    def test_rejects_invalid(self, raw):
        """Test that malformed symbols raise ValidationError."""
        with pytest.raises(ValidationError):
            normalize_symbol(raw)


class TestParsePrice:
    """Unit tests for display-string price parsing."""

    def test_strips_thousands_separators(self):
        """Test that '115,730.65' parses to the exact decimal value."""
        assert parse_price("115,730.65") == Decimal("115730.65")

    def test_strips_whitespace(self):
        """Test that embedded whitespace is ignored."""
        assert parse_price(" 4 210.37 ") == Decimal("4210.37")

    def test_integer_price(self):
        """Test a price without a fractional part."""
        assert parse_price("190") == Decimal("190")

    @pytest.mark.parametrize("text", ["", "N/A", "-12.5", "1.2.3", "$100"])
    def test_invalid_format(self, text):
        """Test that unparseable text is a transient read error."""
        with pytest.raises(TransientReadError):
            parse_price(text)


class TestPriceSample:
    """Unit tests for PriceSample."""

    def test_from_display_keeps_display_text(self):
        """Test that the display string survives next to the numeric value."""
        sample = PriceSample.from_display("BTCUSD", "115,730.65", timestamp=1.0)
        assert sample.display == "115,730.65"
        assert sample.price == Decimal("115730.65")
        assert sample.timestamp == 1.0

    def test_immutability(self):
        """Test that samples are immutable."""
        sample = PriceSample.from_display("BTCUSD", "1.00")
        with pytest.raises(AttributeError):
            sample.display = "2.00"


class TestPriceDelivery:
    """Unit tests for the per-session delivery record."""

    def _delivery(self, change: str) -> PriceDelivery:
        return PriceDelivery(
            symbol="BTCUSD",
            price=Decimal("115730.65"),
            display_price="115,730.65",
            change=Decimal(change),
            timestamp=1234567890.0,
        )

    def test_direction(self):
        """Test direction derived from the change."""
        assert self._delivery("1.5").direction == "up"
        assert self._delivery("-0.5").direction == "down"
        assert self._delivery("0").direction == "flat"

    def test_to_dict(self):
        """Test serialization keeps the display string as the price."""
        result = self._delivery("0").to_dict()
        assert result == {
            "symbol": "BTCUSD",
            "price": "115,730.65",
            "numeric_price": 115730.65,
            "change": 0.0,
            "direction": "flat",
            "timestamp": 1234567890.0,
        }


class TestHelpers:
    """Tests for small formatting helpers."""

    def test_format_price(self):
        """Test thousands separators and two decimals."""
        assert format_price(115730.654) == "115,730.65"
        assert format_price(2.9) == "2.90"

    def test_stream_id(self):
        """Test the price ledger stream id format."""
        assert stream_id_for("BTCUSD", "BINANCE") == "BTCUSD_BINANCE"
