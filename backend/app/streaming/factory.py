"""Factories for price sources and the streaming service context."""

from __future__ import annotations

import logging

from .config import StreamingConfig
from .interface import PriceSource
from .service import StreamingService

logger = logging.getLogger(__name__)


def create_price_source(config: StreamingConfig | None = None) -> PriceSource:
    """Create the appropriate price source for the configuration.

    - MASSIVE_API_KEY set and non-empty → MassivePriceSource (real market data)
    - Otherwise → SimulatorPriceSource (GBM simulation)
    """
    config = config or StreamingConfig.from_env()

    if config.massive_api_key:
        from .massive_client import MassivePriceSource

        logger.info("Price source: Massive API (%s)", config.massive_market_type)
        return MassivePriceSource(
            api_key=config.massive_api_key,
            market_type=config.massive_market_type,
            poll_interval=config.massive_poll_interval,
        )
    else:
        from .simulator import SimulatorPriceSource

        logger.info("Price source: GBM Simulator")
        return SimulatorPriceSource(poll_interval=config.poll_interval)


def create_streaming_service(
    config: StreamingConfig | None = None,
    source: PriceSource | None = None,
) -> StreamingService:
    """Build the process-wide service context. Call once at startup."""
    config = config or StreamingConfig.from_env()
    return StreamingService(source=source or create_price_source(config), config=config)
