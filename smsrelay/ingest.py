"""
Idempotent ingestion of canonical inbound messages.

At-most-once recording per (source, source_message_id) is enforced by the
uq_messages_source_message_id constraint, not by a read-then-write check,
so concurrent ingestors cannot both insert the same event.
"""

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from smsrelay.errors import StoreError, ValidationError
from smsrelay.events import INGESTED_OK, record_event
from smsrelay.models import Direction, Message
from smsrelay.normalize import MAX_BODY_LENGTH, is_valid_e164
from smsrelay.schemas import CanonicalMessage, IngestResult

logger = logging.getLogger(__name__)


def _validate(message: CanonicalMessage) -> str:
    """Check required fields and return the trimmed body."""
    for field in ("source", "source_message_id", "from_address"):
        value = getattr(message, field)
        if value is None or not str(value).strip():
            raise ValidationError(field)

    if not is_valid_e164(message.from_address):
        raise ValidationError("from_address", f"Invalid E.164 number: {message.from_address!r}")

    body = (message.body or "").strip()
    if not body:
        raise ValidationError("body")
    if len(body) > MAX_BODY_LENGTH:
        raise ValidationError("body", f"body exceeds {MAX_BODY_LENGTH} characters")

    if message.timestamp is None:
        raise ValidationError("timestamp")
    return body


def _existing_id(db: Session, source: str, source_message_id: str):
    return (
        db.query(Message.id)
        .filter(Message.source == source, Message.source_message_id == source_message_id)
        .scalar()
    )


def ingest(db: Session, message: CanonicalMessage) -> IngestResult:
    """
    Persist a canonical inbound message exactly once.

    Args:
        db: Database session; committed or rolled back here
        message: Normalized inbound message

    Returns:
        IngestResult with the stored row id; idempotent=True when the
        (source, source_message_id) pair was already stored

    Raises:
        ValidationError: a required field is missing or malformed
        StoreError: the store is unavailable
    """
    body = _validate(message)
    source = message.source.strip()
    source_message_id = message.source_message_id.strip()

    logger.info(f"Ingesting message: source={source}, source_message_id={source_message_id}")

    try:
        row = Message(
            source=source,
            source_message_id=source_message_id,
            direction=Direction.inbound.value,
            from_address=message.from_address,
            to_address=message.to_address,
            body=body,
            meta=message.meta,
            sent_at=message.timestamp,
        )
        db.add(row)
        db.flush()

        record_event(
            db,
            INGESTED_OK,
            {
                "ingested_ok": True,
                "message_id": row.id,
                "source": source,
                "source_message_id": source_message_id,
            },
            message_id=row.id,
        )
        db.commit()
        logger.info(f"Message stored: id={row.id}")
        return IngestResult(stored_id=row.id, idempotent=False)

    except IntegrityError:
        # (source, source_message_id) already exists - expected for replays
        db.rollback()
        try:
            existing = _existing_id(db, source, source_message_id)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e
        if existing is None:
            # Conflict on something other than the natural key
            raise StoreError(f"Integrity error storing {source}/{source_message_id}")
        logger.info(f"Duplicate message detected: {source}/{source_message_id} -> {existing}")
        return IngestResult(stored_id=existing, idempotent=True)

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store message {source}/{source_message_id}: {e}")
        raise StoreError(str(e)) from e
