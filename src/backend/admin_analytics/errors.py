"""Exception types raised by the admin analytics engine."""
from __future__ import annotations


class AdminAnalyticsError(RuntimeError):
    """Base class for every error raised by this package."""


class ConfigurationError(AdminAnalyticsError):
    """Raised when settings are missing or cannot be honoured."""


class UpstreamUnavailable(AdminAnalyticsError):
    """Raised when the event store cannot answer a query.

    Aggregations fail closed on this error; no partial payload is returned.
    """


class GeoLookupFailure(AdminAnalyticsError):
    """Raised by geo lookup clients. Never escapes :class:`GeoResolver`."""

