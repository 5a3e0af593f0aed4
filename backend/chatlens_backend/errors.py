from __future__ import annotations


class ChatLensError(Exception):
    """Base class for errors raised by chatlens services."""


class ValidationError(ChatLensError):
    """Missing or malformed input. Surfaced as a 4xx and never retried."""


class NotFoundError(ChatLensError):
    pass


class TransientDeliveryError(ChatLensError):
    """A telemetry send failed (network error or non-2xx response)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QueueUnavailableError(ChatLensError):
    """The durable outbox could not be read or written."""


class StreamProducerError(ChatLensError):
    """The token producer failed before the stream completed."""


class PersistenceError(ChatLensError):
    """The store rejected a write after the response was fully generated."""
