"""
Retry scheduler for outbound messages.

Outbound rows move queued -> sending -> {sent | queued | permanently_failed}.
Workers coordinate only through the store:

- claim_one() picks the earliest eligible row and claims it with a single
  conditional UPDATE that sets status=sending, bumps attempt_count and
  pushes next_attempt_at forward by a lease. Only one concurrent UPDATE can
  match the seen attempt_count, so only one worker wins the row. A sending
  row whose lease has run out (the worker died mid-send) is eligible again.
- process_claimed() writes the outcome with another conditional UPDATE on
  the claimed attempt_count, together with the Attempt row and any
  dead-letter event, in one transaction.

Breaker-open skips are recorded as attempts but do not spend retry budget:
the budget is attempt_count - breaker_skip_count.
"""

import logging
import random
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from smsrelay.breaker import CircuitBreaker
from smsrelay.bridge import BridgeClient, BridgeResult
from smsrelay.dead_letter import DeadLetterEmitter
from smsrelay.errors import BreakerOpenError, DeliveryError
from smsrelay.metrics import record_delivery_attempt
from smsrelay.models import Attempt, AttemptOutcome, Direction, Message, MessageStatus
from smsrelay.retry import next_attempt_delay
from smsrelay.storage import SessionLocal, session_scope, utcnow

logger = logging.getLogger(__name__)

QUEUED = MessageStatus.queued.value
SENDING = MessageStatus.sending.value
CLAIMABLE = (QUEUED, SENDING)
SENT = MessageStatus.sent.value
PERMANENTLY_FAILED = MessageStatus.permanently_failed.value


class RetryScheduler:
    """
    Claims and delivers one outbound message per iteration.

    Args:
        bridge: gateway client
        breaker: circuit breaker guarding the gateway
        dead_letter: emitter for exhausted messages
        schedule: ordered base delays for retries
        max_attempts: delivery attempts before a message is failed
        jitter_ms: upper bound of uniform jitter added to each delay
        claim_lease: how long a claimed row stays invisible to other workers
        idle_poll_interval / busy_poll_interval: loop sleeps in seconds
    """

    def __init__(
        self,
        bridge: BridgeClient,
        breaker: CircuitBreaker,
        dead_letter: DeadLetterEmitter,
        schedule: Sequence[timedelta],
        max_attempts: int = 4,
        jitter_ms: int = 200,
        claim_lease: timedelta = timedelta(seconds=15),
        idle_poll_interval: float = 1.0,
        busy_poll_interval: float = 0.1,
        session_factory=SessionLocal,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        max_claim_candidates: int = 5,
    ):
        self.bridge = bridge
        self.breaker = breaker
        self.dead_letter = dead_letter
        self.schedule = tuple(schedule)
        self.max_attempts = max_attempts
        self.jitter_ms = jitter_ms
        self.claim_lease = claim_lease
        self.idle_poll_interval = idle_poll_interval
        self.busy_poll_interval = busy_poll_interval
        self.session_factory = session_factory
        self.clock = clock
        self.rng = rng or random.Random()
        self.max_claim_candidates = max_claim_candidates

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def _next_candidate(self, db: Session, now: datetime):
        return (
            db.query(Message.id, Message.attempt_count)
            .filter(
                Message.direction == Direction.outbound.value,
                Message.status.in_(CLAIMABLE),
                Message.next_attempt_at <= now,
            )
            .order_by(Message.next_attempt_at, Message.created_at)
            .first()
        )

    def try_claim(self, db: Session, message_id: str, seen_attempt_count: int, now: datetime) -> Optional[Message]:
        """
        Conditionally claim one row.

        Returns:
            The claimed Message, or None if another worker got there first
        """
        result = db.execute(
            update(Message)
            .where(
                Message.id == message_id,
                Message.status.in_(CLAIMABLE),
                Message.attempt_count == seen_attempt_count,
                Message.next_attempt_at <= now,
            )
            .values(
                status=SENDING,
                attempt_count=Message.attempt_count + 1,
                next_attempt_at=now + self.claim_lease,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return db.get(Message, message_id, populate_existing=True)

    def claim_one(self) -> Optional[Message]:
        """
        Claim the earliest eligible queued row, if any.

        Returns:
            The claimed Message (attempt_count already incremented), or None
        """
        now = self.clock()
        with session_scope(self.session_factory) as db:
            for _ in range(self.max_claim_candidates):
                candidate = self._next_candidate(db, now)
                if candidate is None:
                    return None
                claimed = self.try_claim(db, candidate.id, candidate.attempt_count, now)
                if claimed is not None:
                    logger.info(
                        f"Claimed message {claimed.id} (attempt {claimed.attempt_count})",
                        extra={"message_id": claimed.id, "attempt": claimed.attempt_count},
                    )
                    return claimed
                logger.debug(f"Lost claim race for message {candidate.id}")
        return None

    # ------------------------------------------------------------------
    # Process
    # ------------------------------------------------------------------

    def _finalize(
        self,
        message: Message,
        values: dict,
        attempt: Attempt,
        dead_letter: bool = False,
    ) -> bool:
        """
        Write the message outcome and its Attempt row atomically.

        The UPDATE is conditional on the claimed attempt_count and sending
        status; if the row moved on (lease expired and reclaimed), nothing
        is written.
        """
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(Message)
                .where(
                    Message.id == message.id,
                    Message.status == SENDING,
                    Message.attempt_count == message.attempt_count,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning(
                    f"Claim on message {message.id} lost before outcome was written",
                    extra={"message_id": message.id, "attempt": message.attempt_count},
                )
                return False

            db.add(attempt)
            if dead_letter:
                db.flush()
                row = db.get(Message, message.id, populate_existing=True)
                self.dead_letter.emit(db, row, attempt, now=values.get("last_error_at"))

        record_delivery_attempt(attempt.outcome)
        return True

    def _skip_for_breaker(self, message: Message, now: datetime) -> str:
        reopens_at = self.breaker.reopens_at()
        retry_at = max(reopens_at, now) if reopens_at else now + timedelta(seconds=self.idle_poll_interval)
        attempt = Attempt(
            message_id=message.id,
            attempt_number=message.attempt_count,
            http_code=0,
            outcome=AttemptOutcome.breaker_open.value,
            latency_ms=0,
            error_kind="breaker_open",
            response_excerpt="Circuit breaker open",
            created_at=now,
        )
        self._finalize(
            message,
            {
                "status": QUEUED,
                "breaker_skip_count": Message.breaker_skip_count + 1,
                "next_attempt_at": retry_at,
                "last_error": "Circuit breaker open",
                "last_error_at": now,
            },
            attempt,
        )
        logger.info(
            f"Breaker open, message {message.id} deferred until {retry_at.isoformat()}",
            extra={"message_id": message.id, "attempt": message.attempt_count},
        )
        return AttemptOutcome.breaker_open.value

    def _on_success(self, message: Message, result: BridgeResult, now: datetime) -> str:
        attempt = Attempt(
            message_id=message.id,
            attempt_number=message.attempt_count,
            http_code=result.status_code,
            outcome=AttemptOutcome.success.value,
            latency_ms=result.latency_ms,
            error_kind=None,
            response_excerpt=result.response_excerpt,
            created_at=now,
        )
        self._finalize(
            message,
            {
                "status": SENT,
                "next_attempt_at": None,
                "external_message_id": result.external_message_id,
                "sent_at": now,
            },
            attempt,
        )
        self.breaker.record_outcome(True, result.status_code)
        logger.info(
            f"Message {message.id} sent on attempt {message.attempt_count}",
            extra={"message_id": message.id, "attempt": message.attempt_count},
        )
        return AttemptOutcome.success.value

    def _on_failure(self, message: Message, error: DeliveryError, now: datetime) -> str:
        delivery_attempts = message.delivery_attempts
        exhausted = not error.retryable or delivery_attempts >= self.max_attempts
        outcome = AttemptOutcome.fail if exhausted else AttemptOutcome.retry

        attempt = Attempt(
            message_id=message.id,
            attempt_number=message.attempt_count,
            http_code=error.status_code,
            outcome=outcome.value,
            latency_ms=error.latency_ms,
            error_kind=error.kind.value,
            response_excerpt=error.response_excerpt,
            created_at=now,
        )
        values = {"last_error": str(error), "last_error_at": now}

        if exhausted:
            values.update(status=PERMANENTLY_FAILED, next_attempt_at=None)
            self._finalize(message, values, attempt, dead_letter=True)
            logger.warning(
                f"Message {message.id} permanently failed after {delivery_attempts} attempts: {error}",
                extra={"message_id": message.id, "attempt": message.attempt_count},
            )
        else:
            delay = next_attempt_delay(self.schedule, delivery_attempts, self.jitter_ms, self.rng)
            values.update(status=QUEUED, next_attempt_at=now + delay)
            self._finalize(message, values, attempt)
            logger.info(
                f"Message {message.id} retry {delivery_attempts + 1} in {delay.total_seconds():.3f}s: {error}",
                extra={"message_id": message.id, "attempt": message.attempt_count},
            )

        self.breaker.record_outcome(False, error.status_code)
        return outcome.value

    def process_claimed(self, message: Message) -> str:
        """
        Deliver a claimed message and record the outcome.

        Returns:
            The attempt outcome: success, retry, fail or breaker_open
        """
        now = self.clock()
        try:
            self.breaker.ensure_allowed()
        except BreakerOpenError:
            return self._skip_for_breaker(message, now)

        try:
            result = self.bridge.send(
                message.to_address,
                body=message.body,
                template=message.template_spec(),
            )
        except DeliveryError as e:
            return self._on_failure(message, e, self.clock())
        return self._on_success(message, result, self.clock())

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_once(self) -> bool:
        """
        One claim-and-process cycle. Never raises.

        Returns:
            True if a message was claimed
        """
        try:
            message = self.claim_one()
        except Exception:
            logger.exception("Claim failed")
            return False

        if message is None:
            return False

        try:
            self.process_claimed(message)
        except Exception:
            # Row stays sending; it becomes eligible again when the lease expires
            logger.exception(
                f"Processing failed for message {message.id}",
                extra={"message_id": message.id, "attempt": message.attempt_count},
            )
        return True

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        logger.info("Retry scheduler started")
        while not stop_event.is_set():
            found = self.run_once()
            stop_event.wait(self.busy_poll_interval if found else self.idle_poll_interval)
        logger.info("Retry scheduler stopped")
