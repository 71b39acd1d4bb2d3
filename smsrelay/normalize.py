"""
Provider-agnostic normalization of inbound SMS payloads.

Each adapter maps one provider's webhook body onto CanonicalMessage.
"""

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from smsrelay.errors import ValidationError
from smsrelay.schemas import CanonicalMessage

logger = logging.getLogger(__name__)

MAX_BODY_LENGTH = 1024

_E164_RE = re.compile(r"^\+[1-9]\d{8,14}$")


def to_e164(raw: Optional[str]) -> str:
    """Strip formatting and prefix '+': "27 82-453 7125" -> "+27824537125"."""
    if not raw:
        return ""
    digits = re.sub(r"\D", "", str(raw))
    return f"+{digits}" if digits else ""


def is_valid_e164(value: Optional[str]) -> bool:
    return bool(value) and bool(_E164_RE.match(value))


def _require(name: str, value: Any) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(name)
    return value


def _parse_ts(value: Any) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("timestamp", f"Invalid ISO-8601 timestamp: {value!r}")
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _build(source: str, provider_id: Any, msisdn: Any, text: Any, ts: Any, meta: dict) -> CanonicalMessage:
    from_address = to_e164(_require("from_address", msisdn))
    if not is_valid_e164(from_address):
        raise ValidationError("from_address", f"Invalid E.164 number: {msisdn!r}")

    body = str(_require("body", text)).strip()
    if not body:
        raise ValidationError("body", "Text cannot be empty")
    if len(body) > MAX_BODY_LENGTH:
        body = body[:MAX_BODY_LENGTH]

    _require("source_message_id", provider_id)
    if isinstance(provider_id, bool) or not isinstance(provider_id, (str, int)):
        raise ValidationError("source_message_id", f"Invalid provider message id: {provider_id!r}")

    return CanonicalMessage(
        source=source,
        source_message_id=str(provider_id),
        from_address=from_address,
        to_address=meta.get("to"),
        body=body,
        timestamp=_parse_ts(ts),
        meta=meta,
    )


def from_twilio(body: dict) -> CanonicalMessage:
    return _build(
        "twilio",
        body.get("MessageSid"),
        body.get("From"),
        body.get("Body"),
        body.get("SmsTimestamp"),
        {"original": body, "to": body.get("To"), "sms_status": body.get("SmsStatus")},
    )


def from_infobip(body: dict) -> CanonicalMessage:
    # Infobip wraps messages in a results array
    results = body.get("results", body)
    result = results[0] if isinstance(results, list) and results else results
    if not isinstance(result, dict) or not result:
        raise ValidationError("results", "No results found in Infobip payload")
    return _build(
        "infobip",
        result.get("messageId"),
        result.get("from"),
        result.get("text"),
        result.get("receivedAt") or result.get("sentAt"),
        {"original": body, "to": result.get("to"), "status": result.get("status")},
    )


def _from_operator(source: str) -> Callable[[dict], CanonicalMessage]:
    def adapter(body: dict) -> CanonicalMessage:
        return _build(
            source,
            body.get("id"),
            body.get("msisdn"),
            body.get("text"),
            body.get("timestamp"),
            {"original": body, "shortcode": body.get("shortcode"), "keyword": body.get("keyword")},
        )
    adapter.__name__ = f"from_{source}"
    return adapter


from_mtn = _from_operator("mtn")
from_vodacom = _from_operator("vodacom")


def from_generic(body: dict) -> CanonicalMessage:
    return _build(
        "generic",
        body.get("provider_id"),
        body.get("msisdn"),
        body.get("text"),
        body.get("ts"),
        {"original": body},
    )


def from_portal(body: dict) -> CanonicalMessage:
    # Portal sends {msisdn, text, provider_id?}; fall back to a content key
    # so replays of the same portal message still dedupe.
    provider_id = body.get("provider_id") or body.get("id")
    if not provider_id and body.get("msisdn") and body.get("text"):
        key = f"{to_e164(body['msisdn'])}|{body.get('ts') or ''}|{body['text']}"
        provider_id = "portal-" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
    return _build(
        "portal",
        provider_id,
        body.get("msisdn"),
        body.get("text"),
        body.get("ts"),
        {"original": body, "provider_shape": "PORTAL"},
    )


ADAPTERS: dict[str, Callable[[dict], CanonicalMessage]] = {
    "twilio": from_twilio,
    "infobip": from_infobip,
    "mtn": from_mtn,
    "vodacom": from_vodacom,
    "generic": from_generic,
    "portal": from_portal,
}


def normalize_inbound(provider: str, payload: Any) -> CanonicalMessage:
    """
    Normalize a provider payload into a CanonicalMessage.

    Raises:
        ValidationError: unknown provider, non-object payload, or a missing field
    """
    adapter = ADAPTERS.get(provider)
    if adapter is None:
        raise ValidationError("source", f"Unknown provider: {provider}")
    if not isinstance(payload, dict):
        raise ValidationError("payload", "Payload must be a JSON object")

    message = adapter(payload)
    logger.debug(f"Normalized {provider} payload: source_message_id={message.source_message_id}")
    return message
