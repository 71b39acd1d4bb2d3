"""
Delivery worker process.

    python -m smsrelay.worker

Any number of workers may run against the same database; they coordinate
only through row claims and the shared breaker row.
"""

import logging
import signal
import threading
from typing import Optional

from smsrelay.breaker import CircuitBreaker
from smsrelay.bridge import BridgeClient
from smsrelay.config import Settings, settings as default_settings
from smsrelay.dead_letter import DeadLetterEmitter
from smsrelay.logging_utils import setup_logging
from smsrelay.scheduler import RetryScheduler
from smsrelay.storage import SessionLocal, init_db

logger = logging.getLogger(__name__)


def build_breaker(settings: Settings, session_factory=SessionLocal) -> CircuitBreaker:
    return CircuitBreaker(
        session_factory=session_factory,
        service=settings.BRIDGE_SERVICE_NAME,
        failure_threshold=settings.BREAKER_FAIL_THRESHOLD,
        half_open_after=settings.BREAKER_HALF_OPEN_AFTER,
        success_threshold=settings.BREAKER_SUCCESS_THRESHOLD,
    )


def build_scheduler(
    settings: Settings,
    bridge: Optional[BridgeClient] = None,
    session_factory=SessionLocal,
) -> RetryScheduler:
    """Wire a RetryScheduler from settings."""
    bridge = bridge or BridgeClient(
        base_url=settings.BRIDGE_BASE_URL,
        api_key=settings.BRIDGE_API_KEY,
        timeout=settings.BRIDGE_TIMEOUT_SECONDS,
    )
    return RetryScheduler(
        bridge=bridge,
        breaker=build_breaker(settings, session_factory),
        dead_letter=DeadLetterEmitter(enabled=settings.DLQ_ENABLED),
        schedule=settings.retry_schedule,
        max_attempts=settings.RETRY_MAX_ATTEMPTS,
        jitter_ms=settings.RETRY_JITTER_MS,
        claim_lease=settings.claim_lease,
        idle_poll_interval=settings.WORKER_POLL_INTERVAL,
        busy_poll_interval=settings.WORKER_BUSY_POLL_INTERVAL,
        session_factory=session_factory,
    )


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _stop(signum, frame):
        logger.info(f"Received signal {signum}, stopping after current message")
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


def main() -> None:
    setup_logging(default_settings.LOG_LEVEL, service="worker")
    init_db()

    scheduler = build_scheduler(default_settings)
    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    logger.info(
        f"Worker started: bridge={default_settings.BRIDGE_BASE_URL}, "
        f"max_attempts={default_settings.RETRY_MAX_ATTEMPTS}, schedule={default_settings.RETRY_SCHEDULE}"
    )
    try:
        scheduler.run_forever(stop_event)
    finally:
        scheduler.bridge.close()
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
