"""
Error taxonomy for dispatch.

Request errors are raised to the caller. Everything else is recorded into
the dispatch result and never escapes the engine.
"""

from typing import Any


class CaptionRelayError(Exception):
    """Base class for all CaptionRelay errors."""

    retryable = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class RequestError(CaptionRelayError):
    """The dispatch request itself is unusable."""

    http_status = 400


class BadRequestError(RequestError):
    """Missing/invalid payload or no enabled steps."""

    http_status = 400


class NotFoundError(RequestError):
    """Referenced schedule group (or channel) does not exist."""

    http_status = 404


class ConfigurationError(CaptionRelayError):
    """Missing channel, blank apiUrl or missing model. Never retried."""


class NetworkError(CaptionRelayError):
    """Connection failure, timeout or cancellation of a provider call."""

    retryable = True


class ProviderError(CaptionRelayError):
    """Provider answered with a status outside 2xx."""

    retryable = True

    def __init__(self, status: int, detail: Any = None):
        super().__init__(f"HTTP {status}")
        self.status = status
        self.detail = detail


class AcceptanceError(CaptionRelayError):
    """Response text length fell outside the accepted window."""

    retryable = True

    def __init__(
        self,
        length: int,
        min_chars: int | None = None,
        max_chars: int | None = None,
    ):
        super().__init__(
            f"Length rule failed: {length} not in [{min_chars}, {max_chars}]"
        )
        self.length = length
        self.min_chars = min_chars
        self.max_chars = max_chars
