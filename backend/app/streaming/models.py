"""Data models for the streaming engine."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from .errors import TransientReadError, ValidationError

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]{3,15}$")
PRICE_PATTERN = re.compile(r"^[\d,]+\.?\d*$")


def normalize_symbol(raw: str | None) -> str:
    """Trim and upper-case a symbol, rejecting anything outside ``^[A-Z0-9]{3,15}$``."""
    if raw is None or not raw.strip():
        raise ValidationError("Ticker symbol cannot be empty")
    symbol = raw.strip().upper()
    if not SYMBOL_PATTERN.match(symbol):
        raise ValidationError(
            f"Invalid ticker format {symbol!r}: must be 3-15 alphanumeric characters (e.g. BTCUSD)"
        )
    return symbol


def parse_price(text: str) -> Decimal:
    """Parse a displayed price such as ``"115,730.65"`` into a Decimal.

    Whitespace and thousands separators are stripped before conversion.
    """
    cleaned = re.sub(r"\s+", "", text or "")
    if not PRICE_PATTERN.match(cleaned):
        raise TransientReadError(f"Invalid price format: {text!r}")
    try:
        return Decimal(cleaned.replace(",", ""))
    except InvalidOperation as e:
        raise TransientReadError(f"Invalid price format: {text!r}") from e


def format_price(price: float) -> str:
    """Render a price the way quote pages do, e.g. ``115,730.65``."""
    return f"{price:,.2f}"


def stream_id_for(symbol: str, exchange: str) -> str:
    """Price ledger key for a (symbol, exchange) feed."""
    return f"{symbol}_{exchange}"


@dataclass(frozen=True, slots=True)
class PriceSample:
    """One price observed from a price source.

    ``display`` is the text exactly as the source rendered it, ``price`` the
    parsed numeric value.
    """

    symbol: str
    display: str
    price: Decimal
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_display(cls, symbol: str, display: str, timestamp: float | None = None) -> PriceSample:
        cleaned = re.sub(r"\s+", "", display)
        return cls(
            symbol=symbol,
            display=cleaned,
            price=parse_price(cleaned),
            timestamp=timestamp if timestamp is not None else time.time(),
        )


@dataclass(frozen=True, slots=True)
class PriceHistoryEntry:
    price: Decimal
    timestamp: float
    change: Decimal
    volume: Decimal | None = None


@dataclass(frozen=True, slots=True)
class PriceDelivery:
    """A price update queued for one client session."""

    symbol: str
    price: Decimal
    display_price: str
    change: Decimal
    timestamp: float

    @property
    def direction(self) -> str:
        """'up', 'down', or 'flat'."""
        if self.change > 0:
            return "up"
        elif self.change < 0:
            return "down"
        return "flat"

    def to_dict(self) -> dict:
        """Serialize for JSON / SSE transmission."""
        return {
            "symbol": self.symbol,
            "price": self.display_price,
            "numeric_price": float(self.price),
            "change": float(self.change),
            "direction": self.direction,
            "timestamp": self.timestamp,
        }
