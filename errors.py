"""Exception types raised across the correlation pipeline."""

from __future__ import annotations


class CorrelationError(RuntimeError):
    """Base class for pipeline failures that end one ingestion."""


class MalformedTimestamp(CorrelationError, ValueError):
    """Raised when a timestamp token has the wrong shape or out-of-range fields."""


class StoreUnavailable(CorrelationError):
    """Raised when the correlation store cannot be reached or rejects a call."""


class DispatchRejected(CorrelationError):
    """Raised when the merge job runner refuses an invocation request."""


class ConfigurationError(CorrelationError):
    """Raised for missing or invalid settings."""
