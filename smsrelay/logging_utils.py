import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from smsrelay.metrics import record_http_request


# Request id of the HTTP request being served, if any
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON log lines with ISO-8601 `ts`, `level`, `service` and, inside an
    HTTP request, `request_id`.
    """

    def __init__(self, *args, service: str = "api", **kwargs):
        super().__init__(*args, **kwargs)
        self.service = service

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = ts.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname
        log_record.setdefault('service', self.service)

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO", service: str = "api"):
    """
    Install JSON logging on stdout for the API or the worker.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service: "api" or "worker", added to every line
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s', service=service))
    root.addHandler(handler)

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # Request lines come from RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True
    # httpx logs every request at INFO; the bridge client logs its own outcome
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def _route_path(request: Request) -> str:
    """Route template (/send/status/{message_id}) rather than the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Keys: request_id, method, path, route, status, latency_ms.
    /sms/{provider} lines also carry the fields set by log_ingest_data().
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            latency = time.perf_counter() - started
            route = _route_path(request)

            if route != "/metrics":
                record_http_request(
                    method=request.method,
                    path=route,
                    status=response.status_code,
                    latency_seconds=latency,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route,
                "status": response.status_code,
                "latency_ms": round(latency * 1000, 2),
            }
            log_data.update(getattr(request.state, "ingest_log_data", {}))

            logger = logging.getLogger("smsrelay.requests")
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(level, "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_ingest_data(
    request: Request,
    provider: str,
    message_id: Optional[str] = None,
    dup: bool = False,
    result: Optional[str] = None,
):
    """
    Attach ingestion fields to the request log line.

    Args:
        request: FastAPI request object
        provider: inbound adapter name from the path
        message_id: stored message id
        dup: True when the callback was a replay
        result: created, duplicate, invalid_signature, validation_error, store_error
    """
    data = {"provider": provider, "dup": dup}
    if message_id is not None:
        data["message_id"] = message_id
    if result is not None:
        data["result"] = result
    request.state.ingest_log_data = data
