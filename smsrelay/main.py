import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated
from urllib.parse import parse_qsl

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from smsrelay.breaker import CircuitBreaker
from smsrelay.config import settings
from smsrelay.errors import StoreError, ValidationError
from smsrelay.ingest import ingest
from smsrelay.logging_utils import setup_logging, RequestLoggingMiddleware, log_ingest_data
from smsrelay.metrics import record_ingest_outcome, get_metrics, get_metrics_content_type
from smsrelay.normalize import normalize_inbound
from smsrelay.outbound import enqueue_outbound, get_message_status, list_dead_letters
from smsrelay.schemas import (
    BreakerStatusResponse,
    DeadLetterResponse,
    EnqueueResponse,
    ErrorResponse,
    HealthResponse,
    IngestResponse,
    MessageStatusResponse,
    SendTemplateRequest,
    SendTextRequest,
)
from smsrelay.storage import init_db, check_db_health, get_db
from smsrelay.utils import verify_hmac_signature
from smsrelay.worker import build_breaker


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="SMS Relay",
    description="Inbound SMS ingestion and outbound chat delivery with retries",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_breaker() -> CircuitBreaker:
    """Breaker for the configured gateway service."""
    return build_breaker(settings)


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(detail=exc.message, field=exc.field).model_dump(),
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error(f"Store unavailable: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=ErrorResponse(detail="Store unavailable").model_dump(),
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied; otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Inbound Route
# =============================================================================

def _parse_payload(raw_body: bytes, content_type: str):
    if "application/x-www-form-urlencoded" in content_type:
        try:
            return dict(parse_qsl(raw_body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as e:
            raise ValidationError("payload", f"Invalid form body: {e}")
    try:
        return json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("payload", f"Invalid JSON: {e}")


@app.post(
    "/sms/{provider}",
    response_model=IngestResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Store unavailable"},
    }
)
async def sms_inbound(
    provider: str,
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db)
) -> IngestResponse:
    """
    Ingest an inbound SMS callback exactly once.

    - Verifies X-Signature (hex HMAC-SHA256 of the raw body) when
      WEBHOOK_SECRET is configured
    - Normalizes the provider payload and stores it idempotently on
      (source, source_message_id)
    """
    logger.info(f"Inbound SMS callback received from {provider}")
    raw_body = await request.body()

    if settings.WEBHOOK_SECRET and not verify_hmac_signature(raw_body, x_signature or "", settings.WEBHOOK_SECRET):
        logger.error(f"Invalid signature on {provider} callback")
        record_ingest_outcome("invalid_signature")
        log_ingest_data(request=request, provider=provider, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        payload = _parse_payload(raw_body, request.headers.get("content-type", ""))
        canonical = normalize_inbound(provider, payload)
        result = ingest(db, canonical)
    except ValidationError as e:
        logger.warning(f"Validation error on {provider} callback: field={e.field}: {e.message}")
        record_ingest_outcome("validation_error")
        log_ingest_data(request=request, provider=provider, result="validation_error")
        raise
    except StoreError:
        record_ingest_outcome("store_error")
        log_ingest_data(request=request, provider=provider, result="store_error")
        raise

    outcome = "duplicate" if result.idempotent else "created"
    record_ingest_outcome(outcome)
    log_ingest_data(
        request=request,
        provider=provider,
        message_id=result.stored_id,
        dup=result.idempotent,
        result=outcome,
    )

    return IngestResponse(stored_message_id=result.stored_id, idempotent=result.idempotent)


# =============================================================================
# Outbound Routes
# =============================================================================

def _enqueue_response(message) -> EnqueueResponse:
    return EnqueueResponse(
        message_id=message.id,
        status=message.status,
        attempt_count=message.attempt_count,
        next_attempt_at=message.next_attempt_at,
    )


@app.post(
    "/send/text",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def send_text(body: SendTextRequest, db: Session = Depends(get_db)) -> EnqueueResponse:
    """Queue a plain text message for delivery."""
    message = enqueue_outbound(db, body.to_outbound())
    return _enqueue_response(message)


@app.post(
    "/send/template",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def send_template(body: SendTemplateRequest, db: Session = Depends(get_db)) -> EnqueueResponse:
    """Queue a template message for delivery."""
    message = enqueue_outbound(db, body.to_outbound())
    return _enqueue_response(message)


@app.get(
    "/send/status/{message_id}",
    response_model=MessageStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
async def send_status(message_id: str, db: Session = Depends(get_db)) -> MessageStatusResponse:
    """Delivery status and ordered attempt history."""
    result = get_message_status(db, message_id)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")
    return result


@app.get("/send/breaker", response_model=BreakerStatusResponse)
async def breaker_status(breaker: CircuitBreaker = Depends(get_breaker)) -> BreakerStatusResponse:
    return breaker.status()


# =============================================================================
# Admin Routes
# =============================================================================

@app.post("/admin/breaker/reset", response_model=BreakerStatusResponse)
async def breaker_reset(breaker: CircuitBreaker = Depends(get_breaker)) -> BreakerStatusResponse:
    """Force the breaker closed."""
    breaker.reset()
    return breaker.status()


@app.post("/admin/breaker/open", response_model=BreakerStatusResponse)
async def breaker_open(breaker: CircuitBreaker = Depends(get_breaker)) -> BreakerStatusResponse:
    """Force the breaker open."""
    breaker.force_open()
    return breaker.status()


@app.get("/admin/dead-letters", response_model=list[DeadLetterResponse])
async def dead_letters(
    limit: Annotated[int, Query(ge=1, le=200, description="Maximum events to return")] = 50,
    db: Session = Depends(get_db)
) -> list[DeadLetterResponse]:
    """Most recent dead-letter events, newest first."""
    return [DeadLetterResponse.model_validate(e) for e in list_dead_letters(db, limit=limit)]


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
