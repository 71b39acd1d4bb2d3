"""
HTTP client for the downstream chat gateway ("bridge").

Every failure is classified here into an ErrorKind and raised as either
TransientDeliveryError or TerminalDeliveryError, carrying the status code
and a short response excerpt for the attempt audit.
"""

import logging
import time
from typing import Any, NamedTuple, Optional

import httpx

from smsrelay.errors import (
    DeliveryError,
    ErrorKind,
    TerminalDeliveryError,
    TransientDeliveryError,
)
from smsrelay.metrics import observe_bridge_latency

logger = logging.getLogger(__name__)

SEND_PATH = "/api/messages/send"
EXCERPT_LENGTH = 200


class BridgeResult(NamedTuple):
    external_message_id: Optional[str]
    status_code: int
    latency_ms: int
    response_excerpt: str


def classify_status(status_code: int) -> Optional[ErrorKind]:
    """
    Map an HTTP status to an ErrorKind, or None for 2xx.

    408 and 429 are retryable 4xx; any other 4xx is terminal.
    """
    if 200 <= status_code < 300:
        return None
    if status_code == 408:
        return ErrorKind.timeout
    if status_code == 429:
        return ErrorKind.rate_limited
    if 400 <= status_code < 500:
        return ErrorKind.client_error
    return ErrorKind.server_error


def _error_for(kind: ErrorKind, status_code: int, excerpt: str, latency_ms: int) -> DeliveryError:
    cls = TransientDeliveryError if kind.retryable else TerminalDeliveryError
    return cls(status_code, excerpt, kind, latency_ms=latency_ms)


def _external_id(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    for key in ("id", "message_id", "wa_id"):
        if data.get(key):
            return str(data[key])
    messages = data.get("messages")
    if isinstance(messages, list) and messages and isinstance(messages[0], dict):
        value = messages[0].get("id")
        return str(value) if value else None
    return None


class BridgeClient:
    """
    Synchronous gateway client with a bounded request timeout.

    Args:
        base_url: gateway base URL
        api_key: sent as X-Api-Key and Bearer token
        timeout: total per-request timeout in seconds
        client: optional pre-built httpx.Client (tests inject a MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout, connect=min(5.0, timeout)),
        )

    def close(self) -> None:
        self._client.close()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def send(
        self,
        to: str,
        body: Optional[str] = None,
        template: Optional[dict] = None,
    ) -> BridgeResult:
        """
        POST one message to the gateway.

        Args:
            to: recipient address
            body: plain text (ignored when template is given)
            template: {"name", "language", "components"}

        Returns:
            BridgeResult on any 2xx

        Raises:
            TransientDeliveryError: timeout, network error, 408, 429, 5xx
            TerminalDeliveryError: any other 4xx
        """
        if template:
            payload = {
                "to": to,
                "template": {
                    "name": template["name"],
                    "language": template.get("language") or "en",
                    "components": template.get("components") or [],
                },
            }
        else:
            payload = {"to": to, "text": body or ""}

        url = f"{self.base_url}{SEND_PATH}"
        start = time.perf_counter()
        try:
            response = self._client.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException as e:
            latency_ms = int((time.perf_counter() - start) * 1000)
            observe_bridge_latency(latency_ms / 1000)
            logger.warning(f"Bridge timeout after {latency_ms}ms sending to {to}")
            raise _error_for(ErrorKind.timeout, 0, str(e)[:EXCERPT_LENGTH] or "timeout", latency_ms) from e
        except httpx.RequestError as e:
            latency_ms = int((time.perf_counter() - start) * 1000)
            observe_bridge_latency(latency_ms / 1000)
            logger.warning(f"Bridge network error sending to {to}: {e}")
            raise _error_for(ErrorKind.network, 0, str(e)[:EXCERPT_LENGTH], latency_ms) from e

        latency_ms = int((time.perf_counter() - start) * 1000)
        observe_bridge_latency(latency_ms / 1000)
        excerpt = response.text[:EXCERPT_LENGTH]

        kind = classify_status(response.status_code)
        if kind is not None:
            logger.warning(f"Bridge returned HTTP {response.status_code} ({kind.value}) for {to}")
            raise _error_for(kind, response.status_code, excerpt, latency_ms)

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}

        external_id = _external_id(data)
        logger.info(f"Bridge accepted message to {to}: external_id={external_id}, latency_ms={latency_ms}")
        return BridgeResult(
            external_message_id=external_id,
            status_code=response.status_code,
            latency_ms=latency_ms,
            response_excerpt=excerpt,
        )
