"""Error types raised by the LLM streaming pipeline."""

from typing import Optional


class ChatStreamError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(ChatStreamError):
    """Invalid request configuration, detected before any network call."""


class TransportError(ChatStreamError):
    """Connection, TLS or timeout failure talking to the endpoint."""


class UpstreamError(ChatStreamError):
    """The endpoint answered with a non-2xx status or an error body."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RequestInProgressError(ChatStreamError):
    """A controller was started while its previous request is still active."""
