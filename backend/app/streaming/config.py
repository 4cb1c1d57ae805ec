"""Environment-driven configuration for the streaming engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("Ignoring %s=%d below minimum %d, using %s", name, value, minimum, default)
        return default
    return value


@dataclass(frozen=True, slots=True)
class StreamingConfig:
    """Tunables for ingestion, retries and fan-out. All durations in seconds."""

    massive_api_key: str = ""
    massive_market_type: str = "stocks"
    massive_poll_interval: float = 15.0
    exchange: str = "BINANCE"
    start_retries: int = 3
    retry_delay: float = 0.5
    wait_timeout: float = 30.0
    poll_interval: float = 1.0
    restart_delay: float = 5.0
    stop_grace: float = 1.0
    read_error_pause: float = 2.0
    queue_size: int = 256
    idle_interval: float = 0.1
    compute_change: bool = False
    history_limit: int = 100

    @classmethod
    def from_env(cls) -> StreamingConfig:
        """Build a config from ``MASSIVE_API_KEY`` and ``STREAM_*`` variables."""
        defaults = cls()
        return cls(
            massive_api_key=os.environ.get("MASSIVE_API_KEY", "").strip(),
            massive_market_type=os.environ.get("MASSIVE_MARKET_TYPE", "").strip().lower() or defaults.massive_market_type,
            massive_poll_interval=_env_float("MASSIVE_POLL_INTERVAL", defaults.massive_poll_interval),
            exchange=os.environ.get("STREAM_EXCHANGE", "").strip().upper() or defaults.exchange,
            start_retries=_env_int("STREAM_START_RETRIES", defaults.start_retries),
            retry_delay=_env_float("STREAM_RETRY_DELAY", defaults.retry_delay),
            wait_timeout=_env_float("STREAM_WAIT_TIMEOUT", defaults.wait_timeout),
            poll_interval=_env_float("STREAM_POLL_INTERVAL", defaults.poll_interval),
            restart_delay=_env_float("STREAM_RESTART_DELAY", defaults.restart_delay),
            stop_grace=_env_float("STREAM_STOP_GRACE", defaults.stop_grace),
            read_error_pause=_env_float("STREAM_READ_ERROR_PAUSE", defaults.read_error_pause),
            queue_size=_env_int("STREAM_QUEUE_SIZE", defaults.queue_size, minimum=1),
            idle_interval=_env_float("STREAM_IDLE_INTERVAL", defaults.idle_interval),
            compute_change=os.environ.get("STREAM_COMPUTE_CHANGE", "").strip().lower() in _TRUTHY,
            history_limit=_env_int("STREAM_HISTORY_LIMIT", defaults.history_limit, minimum=1),
        )
