"""Data connectors package."""
from connectors.slack import (
    MissingTokenError,
    SlackApiClient,
    SlackApiError,
    SlackError,
    SlackRateLimitedError,
    SlackTransportError,
)

__all__ = [
    "MissingTokenError",
    "SlackApiClient",
    "SlackApiError",
    "SlackError",
    "SlackRateLimitedError",
    "SlackTransportError",
]
