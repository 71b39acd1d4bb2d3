"""
Audit events table writer.
"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from smsrelay.models import Event

logger = logging.getLogger(__name__)

INGESTED_OK = "ingested_ok"
DLQ_MESSAGE_FAILED = "dlq_message_failed"


def record_event(
    db: Session,
    event_type: str,
    payload: dict[str, Any],
    message_id: Optional[str] = None,
) -> Event:
    """
    Add an audit event to the current transaction.

    The caller owns the transaction; the event commits or rolls back
    together with the state change it describes.
    """
    event = Event(type=event_type, message_id=message_id, payload=payload)
    db.add(event)
    logger.debug(f"Audit event queued: type={event_type}, message_id={message_id}")
    return event
