"""
Outbound enqueue and status queries.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from smsrelay.errors import StoreError, ValidationError
from smsrelay.events import DLQ_MESSAGE_FAILED
from smsrelay.models import Direction, Event, Message, MessageStatus
from smsrelay.normalize import is_valid_e164, to_e164
from smsrelay.schemas import (
    AttemptResponse,
    MessageStatusResponse,
    OutboundRequest,
)
from smsrelay.storage import utcnow

logger = logging.getLogger(__name__)

OUTBOUND_SOURCE = "internal"


def _validate(request: OutboundRequest) -> str:
    if not request.to or not request.to.strip():
        raise ValidationError("to")
    to_address = to_e164(request.to)
    if not is_valid_e164(to_address):
        raise ValidationError("to", f"Invalid E.164 number: {request.to!r}")

    has_body = bool(request.body and request.body.strip())
    has_template = bool(request.template_name and request.template_name.strip())
    if not has_body and not has_template:
        raise ValidationError("body", "Either body or template_name is required")
    return to_address


def enqueue_outbound(db: Session, request: OutboundRequest) -> Message:
    """
    Create a queued outbound message for the retry scheduler.

    A repeated idempotency_key returns the row created the first time.

    Raises:
        ValidationError: missing recipient, or neither body nor template
        StoreError: the store is unavailable
    """
    to_address = _validate(request)
    source_message_id = request.idempotency_key or f"out-{uuid.uuid4()}"
    is_template = bool(request.template_name)

    row = Message(
        source=OUTBOUND_SOURCE,
        source_message_id=source_message_id,
        direction=Direction.outbound.value,
        to_address=to_address,
        body=request.body.strip() if request.body else None,
        status=MessageStatus.queued.value,
        attempt_count=0,
        breaker_skip_count=0,
        next_attempt_at=utcnow(),
        template_name=request.template_name if is_template else None,
        template_language=(request.template_language or "en") if is_template else None,
        template_components=(request.template_components or []) if is_template else None,
        meta={},
    )

    try:
        db.add(row)
        db.commit()
        logger.info(f"Outbound message queued: id={row.id}, to={to_address}, template={request.template_name}")
        return row
    except IntegrityError:
        db.rollback()
        existing = (
            db.query(Message)
            .filter(Message.source == OUTBOUND_SOURCE, Message.source_message_id == source_message_id)
            .one_or_none()
        )
        if existing is None:
            raise StoreError(f"Integrity error queueing {source_message_id}")
        logger.info(f"Duplicate enqueue for idempotency key {source_message_id} -> {existing.id}")
        return existing
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to queue outbound message: {e}")
        raise StoreError(str(e)) from e


def get_message_status(db: Session, message_id: str) -> Optional[MessageStatusResponse]:
    """
    Status of a message plus its ordered attempt history.

    A row claimed by a worker is still reported as queued; the in-flight
    state is internal to the scheduler.

    Returns:
        MessageStatusResponse, or None if no such message exists
    """
    try:
        message = (
            db.query(Message)
            .options(selectinload(Message.attempts))
            .filter(Message.id == message_id)
            .one_or_none()
        )
    except SQLAlchemyError as e:
        raise StoreError(str(e)) from e

    if message is None:
        return None

    return MessageStatusResponse(
        message_id=message.id,
        status=MessageStatus.queued.value if message.status == MessageStatus.sending.value else message.status,
        attempt_count=message.attempt_count,
        last_error=message.last_error,
        last_error_at=message.last_error_at,
        next_attempt_at=message.next_attempt_at,
        created_at=message.created_at,
        attempts=[AttemptResponse.model_validate(a) for a in message.attempts],
    )


def list_dead_letters(db: Session, limit: int = 50) -> list[Event]:
    """Most recent dead-letter events, newest first."""
    try:
        return (
            db.query(Event)
            .filter(Event.type == DLQ_MESSAGE_FAILED)
            .order_by(Event.created_at.desc())
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise StoreError(str(e)) from e
