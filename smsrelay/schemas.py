"""
Pydantic schemas for request/response validation.

This module contains:
- The canonical inbound message produced by the normalizers
- Request models for outbound sends
- Response models for API responses
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Canonical / internal models
# =============================================================================

class CanonicalMessage(BaseModel):
    """
    Normalized inbound message, independent of the upstream payload shape.

    Fields are deliberately permissive here; the ingestor rejects missing
    or empty required fields with a ValidationError naming the field.
    """
    source: Optional[str] = Field(None, description="Upstream provider key, e.g. twilio")
    source_message_id: Optional[str] = Field(None, description="Provider message id")
    from_address: Optional[str] = Field(None, description="Sender in E.164 format")
    to_address: Optional[str] = Field(None, description="Recipient, if the provider reports it")
    body: Optional[str] = Field(None, description="Trimmed message text, 1-1024 chars")
    timestamp: Optional[datetime] = Field(None, description="Provider event time")
    meta: dict[str, Any] = Field(default_factory=dict, description="Original payload and extras")


class IngestResult(BaseModel):
    """Outcome of one ingestion call."""
    stored_id: str
    idempotent: bool


class OutboundRequest(BaseModel):
    """Internal enqueue request: either body or a template spec."""
    to: Optional[str] = None
    body: Optional[str] = None
    template_name: Optional[str] = None
    template_language: Optional[str] = None
    template_components: Optional[list[Any]] = None
    idempotency_key: Optional[str] = None


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendTextRequest(BaseModel):
    """POST /send/text body."""
    to: str = Field(..., min_length=1, description="Recipient phone number")
    text: str = Field(..., min_length=1, max_length=4096, description="Message text")
    idempotency_key: Optional[str] = Field(None, description="Caller-supplied dedupe key")

    def to_outbound(self) -> OutboundRequest:
        return OutboundRequest(to=self.to, body=self.text, idempotency_key=self.idempotency_key)


class SendTemplateRequest(BaseModel):
    """POST /send/template body."""
    to: str = Field(..., min_length=1, description="Recipient phone number")
    template_name: str = Field(..., min_length=1)
    template_language: str = Field("en", min_length=1)
    template_components: list[Any] = Field(default_factory=list)
    idempotency_key: Optional[str] = None

    def to_outbound(self) -> OutboundRequest:
        return OutboundRequest(
            to=self.to,
            template_name=self.template_name,
            template_language=self.template_language,
            template_components=self.template_components,
            idempotency_key=self.idempotency_key,
        )


# =============================================================================
# Pydantic Response Models
# =============================================================================

class IngestResponse(BaseModel):
    """Response model for successful inbound ingestion."""
    status: str = Field(default="ok", description="Operation status")
    stored_message_id: str = Field(..., description="Id of the stored message row")
    idempotent: bool = Field(..., description="True when the message was already stored")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    field: Optional[str] = Field(None, description="Offending field for validation errors")


class EnqueueResponse(BaseModel):
    """Response model for an accepted outbound send."""
    message_id: str
    status: str
    attempt_count: int
    next_attempt_at: Optional[datetime] = None


class AttemptResponse(BaseModel):
    """One delivery attempt in a message's history."""
    attempt_number: int
    http_code: int
    outcome: str
    latency_ms: int
    error_kind: Optional[str] = None
    response_excerpt: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class MessageStatusResponse(BaseModel):
    """
    Status of an outbound message plus its ordered attempt history.

    status is queued, sent or permanently_failed; a message in flight
    reports queued.
    """
    message_id: str
    status: Optional[str] = None
    attempt_count: int
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    created_at: datetime
    attempts: list[AttemptResponse] = Field(default_factory=list)


class BreakerStatusResponse(BaseModel):
    """Current circuit breaker state."""
    service: str
    state: str
    failure_count: int
    success_count: int
    opened_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DeadLetterResponse(BaseModel):
    """A dead-letter audit event."""
    id: str
    message_id: Optional[str] = None
    payload: dict[str, Any]
    created_at: datetime

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
