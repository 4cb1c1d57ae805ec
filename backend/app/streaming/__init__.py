"""Ticker subscription and price streaming engine.

Public API:
    StreamingService         - Service context: subscribe / unsubscribe / health / stream
    StreamingConfig          - Environment-driven tunables
    SubscriptionLedger       - Event-sourced record of who watches which symbol
    PriceLedger              - Event-sourced price state per (symbol, exchange)
    IngestionController      - One live price source session per subscribed symbol
    EventBus                 - In-process publish point for committed ledger events
    FanOutDispatcher         - Per-session delivery queue fed from the bus
    PriceSource              - Abstract interface for price providers
    create_price_source      - Factory that selects simulator or Massive
    create_streaming_service - Builds the service context
    create_stream_router     - FastAPI router factory for the HTTP/SSE endpoints
"""

from .bus import EventBus
from .config import StreamingConfig
from .dispatcher import FanOutDispatcher
from .factory import create_price_source, create_streaming_service
from .ingestion import IngestionController, IngestionState
from .interface import PriceSource, SourceHandle
from .models import PriceDelivery, PriceSample, normalize_symbol
from .prices import PriceLedger
from .service import HealthReport, StreamingService, SubscriptionResult
from .stream import create_stream_router
from .subscriptions import SubscriptionLedger

__all__ = [
    "EventBus",
    "FanOutDispatcher",
    "HealthReport",
    "IngestionController",
    "IngestionState",
    "PriceDelivery",
    "PriceLedger",
    "PriceSample",
    "PriceSource",
    "SourceHandle",
    "StreamingConfig",
    "StreamingService",
    "SubscriptionLedger",
    "SubscriptionResult",
    "create_price_source",
    "create_stream_router",
    "create_streaming_service",
    "normalize_symbol",
]
