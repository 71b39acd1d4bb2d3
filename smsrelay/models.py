"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
import uuid
from datetime import timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from smsrelay.storage import Base, utcnow


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on the way back; values are normalised to UTC on
    write and re-tagged as UTC on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _new_id() -> str:
    return str(uuid.uuid4())


class Direction(str, enum.Enum):
    inbound = "inbound"
    outbound = "outbound"


class MessageStatus(str, enum.Enum):
    queued = "queued"
    sending = "sending"
    sent = "sent"
    permanently_failed = "permanently_failed"


class AttemptOutcome(str, enum.Enum):
    success = "success"
    retry = "retry"
    fail = "fail"
    breaker_open = "breaker_open"


class BreakerStateName(str, enum.Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


class Message(Base):
    """
    One inbound or outbound communication.

    Table: messages
    Unique: (source, source_message_id) enforces at-most-once ingestion
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("source", "source_message_id", name="uq_messages_source_message_id"),
        Index("ix_messages_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_messages_from_created", "from_address", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    source = Column(String, nullable=False)
    source_message_id = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    from_address = Column(String, nullable=True)
    to_address = Column(String, nullable=True)
    body = Column(Text, nullable=True)

    # Outbound delivery state
    status = Column(String, nullable=True, index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    breaker_skip_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(UTCDateTime, nullable=True)
    external_message_id = Column(String, nullable=True)

    template_name = Column(String, nullable=True)
    template_language = Column(String, nullable=True)
    template_components = Column(JSON, nullable=True)

    meta = Column(JSON, nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)  # provider event time (inbound) or delivery time (outbound)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    attempts = relationship(
        "Attempt",
        back_populates="message",
        order_by="Attempt.attempt_number, Attempt.created_at",
    )

    @property
    def delivery_attempts(self) -> int:
        """Attempts that actually reached the gateway."""
        return (self.attempt_count or 0) - (self.breaker_skip_count or 0)

    def template_spec(self):
        if not self.template_name:
            return None
        return {
            "name": self.template_name,
            "language": self.template_language or "en",
            "components": self.template_components or [],
        }


class Attempt(Base):
    """
    One delivery attempt against a Message. Append-only.

    Table: attempts
    """
    __tablename__ = "attempts"

    id = Column(String(36), primary_key=True, default=_new_id)
    message_id = Column(String(36), ForeignKey("messages.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    http_code = Column(Integer, nullable=False, default=0)
    outcome = Column(String, nullable=False, index=True)
    latency_ms = Column(Integer, nullable=False, default=0)
    error_kind = Column(String, nullable=True)
    response_excerpt = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)

    message = relationship("Message", back_populates="attempts")


class BreakerState(Base):
    """
    Circuit breaker row, one per protected downstream service.

    `version` is bumped on every write and used as the compare-and-swap
    token for concurrent workers.
    """
    __tablename__ = "breaker_state"

    service = Column(String, primary_key=True)
    state = Column(String, nullable=False, default=BreakerStateName.closed.value)
    failure_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    opened_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False, default=0)


class Event(Base):
    """
    Audit event (ingestion, dead-letter, ...).

    Table: events
    """
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_type_created", "type", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    type = Column(String, nullable=False)
    message_id = Column(String(36), ForeignKey("messages.id"), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
