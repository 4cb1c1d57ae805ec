"""Error taxonomy for the streaming engine."""

from __future__ import annotations


class StreamingError(Exception):
    """Base class for all streaming engine errors."""


class ValidationError(StreamingError):
    """A symbol failed format validation at the API boundary."""


class SymbolNotFoundError(StreamingError):
    """The price source reports that a symbol does not resolve."""


class IngestionStartFailure(StreamingError):
    """The price source could not be validated for a symbol after all retries."""

    def __init__(self, symbol: str, attempts: int, cause: BaseException | None = None) -> None:
        self.symbol = symbol
        self.attempts = attempts
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to start ingestion for {symbol} after {attempts} attempts{detail}")


class TransientReadError(StreamingError):
    """A single poll or extraction failed. The watch loop keeps going."""


class SourceCrashError(StreamingError):
    """A source handle became unusable while in use."""


class AlreadyDisconnectedError(StreamingError):
    """A connection-loss was recorded for a feed that is not connected."""


class UnknownCommandError(StreamingError):
    """A ledger received a command type it does not handle."""


class ConcurrencyError(StreamingError):
    """An event append was attempted against a stale stream version."""
