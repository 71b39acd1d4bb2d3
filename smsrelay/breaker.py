"""
Persisted circuit breaker shared by every worker process.

States: closed -> open -> half_open -> closed (or half_open -> open).

The breaker_state row is a versioned aggregate: every transition is a
single conditional UPDATE ... WHERE version = :seen. A worker that loses
the race re-reads the row and re-applies its transition, so concurrent
outcomes are never lost.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from smsrelay.errors import BreakerOpenError, StoreError
from smsrelay.metrics import set_breaker_state
from smsrelay.models import BreakerState, BreakerStateName
from smsrelay.schemas import BreakerStatusResponse
from smsrelay.storage import SessionLocal, utcnow

logger = logging.getLogger(__name__)

CLOSED = BreakerStateName.closed.value
OPEN = BreakerStateName.open.value
HALF_OPEN = BreakerStateName.half_open.value

# Transition function: (row, now) -> new column values, or None for no change
Transition = Callable[[BreakerState, datetime], Optional[dict]]


class CircuitBreaker:
    """
    Gate for calls to one downstream service.

    Args:
        session_factory: callable returning a new Session
        service: breaker_state primary key, e.g. "wa_bridge"
        failure_threshold: consecutive failures (closed) before opening
        half_open_after: cooldown in seconds before an open breaker half-opens
        success_threshold: consecutive successes (half_open) before closing
        clock: returns the current aware UTC time
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        service: str = "wa_bridge",
        failure_threshold: int = 8,
        half_open_after: float = 60,
        success_threshold: int = 3,
        clock: Callable[[], datetime] = utcnow,
        max_cas_retries: int = 10,
    ):
        self.session_factory = session_factory
        self.service = service
        self.failure_threshold = failure_threshold
        self.cooldown = timedelta(seconds=half_open_after)
        self.success_threshold = success_threshold
        self.clock = clock
        self.max_cas_retries = max_cas_retries

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    def _load(self, db: Session) -> BreakerState:
        row = db.get(BreakerState, self.service, populate_existing=True)
        if row is not None:
            return row

        # First use: create the row closed. Another worker may win the insert.
        try:
            row = BreakerState(
                service=self.service,
                state=CLOSED,
                failure_count=0,
                success_count=0,
                updated_at=self.clock(),
                version=0,
            )
            db.add(row)
            db.commit()
            logger.info(f"Breaker row created for {self.service}")
            return row
        except IntegrityError:
            db.rollback()
            return db.get(BreakerState, self.service, populate_existing=True)

    def _apply(self, transition: Transition) -> BreakerState:
        """Read, compute and compare-and-swap until the write wins."""
        for attempt in range(1, self.max_cas_retries + 1):
            db = self.session_factory()
            try:
                row = self._load(db)
                now = self.clock()
                values = transition(row, now)
                if values is None:
                    db.commit()
                    return row

                seen = row.version
                result = db.execute(
                    update(BreakerState)
                    .where(BreakerState.service == self.service, BreakerState.version == seen)
                    .values(version=seen + 1, updated_at=now, **values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    db.commit()
                    row = db.get(BreakerState, self.service, populate_existing=True)
                    set_breaker_state(self.service, row.state)
                    return row

                db.rollback()
                logger.debug(f"Breaker CAS lost for {self.service} (version {seen}), retry {attempt}")
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(str(e)) from e
            finally:
                db.close()

        raise StoreError(f"Breaker update for {self.service} lost {self.max_cas_retries} races")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_allowed(self) -> bool:
        """
        False while open and cooling down.

        Once the cooldown has elapsed the breaker moves to half_open
        (counters reset) and the call is allowed.
        """
        def transition(row: BreakerState, now: datetime) -> Optional[dict]:
            if row.state != OPEN:
                return None
            if row.opened_at is not None and now - row.opened_at < self.cooldown:
                return None
            return {"state": HALF_OPEN, "failure_count": 0, "success_count": 0}

        row = self._apply(transition)
        if row.state == HALF_OPEN and row.success_count == 0:
            logger.debug(f"Breaker {self.service} is half_open")
        return row.state != OPEN

    def ensure_allowed(self) -> None:
        """
        Raises:
            BreakerOpenError: while the breaker is open and cooling down
        """
        if not self.is_allowed():
            raise BreakerOpenError(f"Circuit breaker for {self.service} is open")

    def record_outcome(self, success: bool, status_code: int = 0) -> str:
        """
        Feed one delivery outcome into the state machine.

        Returns:
            The breaker state after the transition
        """
        seen = {}

        def transition(row: BreakerState, now: datetime) -> Optional[dict]:
            seen["state"] = row.state
            if row.state == CLOSED:
                if success:
                    return {"failure_count": 0} if row.failure_count else None
                failures = row.failure_count + 1
                if failures >= self.failure_threshold:
                    return {"state": OPEN, "failure_count": failures, "success_count": 0, "opened_at": now}
                return {"failure_count": failures}

            if row.state == HALF_OPEN:
                if success:
                    successes = row.success_count + 1
                    if successes >= self.success_threshold:
                        return {"state": CLOSED, "failure_count": 0, "success_count": 0, "opened_at": None}
                    return {"success_count": successes}
                return {"state": OPEN, "failure_count": 0, "success_count": 0, "opened_at": now}

            # Open: outcomes are not recorded
            return None

        row = self._apply(transition)
        before = seen.get("state", row.state)
        if row.state != before:
            logger.warning(
                f"Breaker {self.service} {before} -> {row.state} "
                f"(last status {status_code}, failures={row.failure_count}, successes={row.success_count})"
            )
        return row.state

    def reopens_at(self) -> Optional[datetime]:
        """When an open breaker will next allow a call, or None if not open."""
        row = self.status()
        if row.state != OPEN or row.opened_at is None:
            return None
        return row.opened_at + self.cooldown

    def status(self) -> BreakerStatusResponse:
        db = self.session_factory()
        try:
            row = self._load(db)
            return BreakerStatusResponse(
                service=row.service,
                state=row.state,
                failure_count=row.failure_count,
                success_count=row.success_count,
                opened_at=row.opened_at,
                updated_at=row.updated_at,
            )
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e
        finally:
            db.close()

    def reset(self) -> None:
        """Force the breaker closed (admin)."""
        self._apply(lambda row, now: {"state": CLOSED, "failure_count": 0, "success_count": 0, "opened_at": None})
        logger.info(f"Breaker {self.service} reset to closed")

    def force_open(self) -> None:
        """Force the breaker open (admin)."""
        self._apply(lambda row, now: {
            "state": OPEN,
            "failure_count": self.failure_threshold,
            "success_count": 0,
            "opened_at": now,
        })
        logger.info(f"Breaker {self.service} forced open")
