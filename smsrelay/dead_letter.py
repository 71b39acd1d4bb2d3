"""
Dead-letter audit events for messages that exhausted delivery.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from smsrelay.events import DLQ_MESSAGE_FAILED, record_event
from smsrelay.metrics import record_dead_letter
from smsrelay.models import Attempt, Event, Message
from smsrelay.storage import utcnow

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class DeadLetterEmitter:
    """
    Writes one dlq_message_failed event per permanently failed message.

    The scheduler calls emit() inside the same transaction that sets
    status = permanently_failed, and only on that transition, so the
    event is written exactly once. When disabled, nothing is written.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def emit(
        self,
        db: Session,
        message: Message,
        last_attempt: Optional[Attempt],
        now: Optional[datetime] = None,
    ) -> Optional[Event]:
        if not self.enabled:
            logger.debug(f"Dead-letter disabled, skipping event for {message.id}")
            return None

        payload = {
            "type": "message_permanently_failed",
            "message_id": message.id,
            "message": {
                "id": message.id,
                "source": message.source,
                "source_message_id": message.source_message_id,
                "from_address": message.from_address,
                "to_address": message.to_address,
                "body": message.body,
                "template_name": message.template_name,
                "template_language": message.template_language,
                "template_components": message.template_components,
                "attempt_count": message.attempt_count,
                "last_error": message.last_error,
                "last_error_at": _iso(message.last_error_at),
            },
            "last_attempt": {
                "attempt_number": last_attempt.attempt_number,
                "http_code": last_attempt.http_code,
                "error_kind": last_attempt.error_kind,
                "response_excerpt": last_attempt.response_excerpt,
            } if last_attempt is not None else None,
            "failed_at": (now or utcnow()).isoformat(),
        }

        event = record_event(db, DLQ_MESSAGE_FAILED, payload, message_id=message.id)
        record_dead_letter()
        logger.warning(
            f"Dead-letter event for message {message.id} after {message.attempt_count} attempts: {message.last_error}"
        )
        return event
