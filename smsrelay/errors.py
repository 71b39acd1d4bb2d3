"""
Exception taxonomy for ingestion, enqueue and delivery.

ValidationError and StoreError surface synchronously to callers of the
ingestion/enqueue functions. The DeliveryError family is raised by the
bridge client and consumed by the retry scheduler; it never reaches HTTP.
"""

import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    """Delivery failure kinds, classified once at the HTTP boundary."""

    timeout = "timeout"
    network = "network"
    rate_limited = "rate_limited"
    server_error = "server_error"
    client_error = "client_error"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.client_error


class RelayError(Exception):
    """Base class for all sms-relay errors."""


class ConfigError(RelayError):
    """Invalid operator configuration."""


class ValidationError(RelayError):
    """A required ingestion or enqueue field is missing or malformed."""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        self.message = message or f"Missing required field: {field}"
        super().__init__(self.message)


class StoreError(RelayError):
    """The durable store is unavailable or rejected the operation."""


class DeliveryError(RelayError):
    """
    Gateway call failed.

    Attributes:
        status_code: HTTP status, or 0 for transport errors
        response_excerpt: first characters of the response body or error text
        kind: classified ErrorKind
    """

    def __init__(self, status_code: int, response_excerpt: str, kind: ErrorKind, latency_ms: int = 0):
        self.status_code = status_code
        self.response_excerpt = response_excerpt
        self.kind = kind
        self.latency_ms = latency_ms
        super().__init__(f"{kind.value}: HTTP {status_code}: {response_excerpt}")

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class TransientDeliveryError(DeliveryError):
    """5xx, 408, 429, timeouts and network errors. Drives backoff."""


class TerminalDeliveryError(DeliveryError):
    """4xx other than 408/429. The message is failed immediately."""


class BreakerOpenError(RelayError):
    """Dispatch skipped because the circuit breaker is open."""
