"""
Pytest configuration and shared fixtures.

Test env vars are set here before any smsrelay import so the settings
object and the engine are built against the test database.
"""

import os
import random
from datetime import timedelta

import httpx
import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_smsrelay.db")
os.environ.setdefault("WEBHOOK_SECRET", "testsecret")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("BRIDGE_BASE_URL", "http://bridge.test")

# Clear settings cache before any app imports to ensure test env vars are used
from smsrelay.config import get_settings  # noqa: E402
get_settings.cache_clear()

from smsrelay.breaker import CircuitBreaker  # noqa: E402
from smsrelay.bridge import BridgeClient  # noqa: E402
from smsrelay.dead_letter import DeadLetterEmitter  # noqa: E402
from smsrelay.retry import parse_schedule  # noqa: E402
from smsrelay.scheduler import RetryScheduler  # noqa: E402
from smsrelay.storage import Base, SessionLocal, engine, init_db, utcnow  # noqa: E402


class FakeClock:
    """
    Callable clock that only moves when told to.

    Starts a few seconds ahead of the wall clock so rows queued with the
    real utcnow() are already due.
    """

    def __init__(self, start=None):
        self.now = start or utcnow() + timedelta(seconds=5)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture(scope="function")
def tables():
    """Fresh schema for each test."""
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


def make_bridge(handler) -> BridgeClient:
    """BridgeClient whose HTTP calls are served by handler(request)."""
    return BridgeClient(
        base_url="http://bridge.test",
        api_key="test-key",
        timeout=1.0,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


class RecordingHandler:
    """MockTransport handler returning queued responses and counting calls."""

    def __init__(self, *responses, default=None):
        self.responses = list(responses)
        self.default = default or (200, {"id": "wamid.default"})
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0) if self.responses else self.default
        if isinstance(body, Exception):
            raise body
        return httpx.Response(status, json=body)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def make_scheduler(tables, clock):
    """Build a RetryScheduler wired to a fake clock and a mocked gateway."""
    built = []

    def _make(
        handler,
        max_attempts=4,
        schedule="1s,4s,15s,60s",
        jitter_ms=0,
        fail_threshold=8,
        half_open_after=60,
        success_threshold=3,
        dlq_enabled=True,
    ) -> RetryScheduler:
        breaker = CircuitBreaker(
            session_factory=SessionLocal,
            service="wa_bridge",
            failure_threshold=fail_threshold,
            half_open_after=half_open_after,
            success_threshold=success_threshold,
            clock=clock,
        )
        scheduler = RetryScheduler(
            bridge=make_bridge(handler),
            breaker=breaker,
            dead_letter=DeadLetterEmitter(enabled=dlq_enabled),
            schedule=parse_schedule(schedule),
            max_attempts=max_attempts,
            jitter_ms=jitter_ms,
            claim_lease=timedelta(seconds=15),
            session_factory=SessionLocal,
            clock=clock,
            rng=random.Random(7),
        )
        built.append(scheduler)
        return scheduler

    yield _make

    for scheduler in built:
        scheduler.bridge.close()
