"""
Backoff policy for outbound retries.

The schedule is an ordered list of base delays, e.g. "1s,4s,15s,60s".
Attempt N waits schedule[min(N-1, len-1)] plus uniform jitter.
"""

import random
import re
from datetime import timedelta
from typing import Optional, Sequence

from smsrelay.errors import ConfigError

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)$")

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
}


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration like "500ms", "15s", "2m" or "1h".

    Raises:
        ConfigError: if the value is not a recognised duration
    """
    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ConfigError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return timedelta(seconds=float(amount) * _UNIT_SECONDS[unit])


def parse_schedule(value: str) -> tuple[timedelta, ...]:
    """
    Parse a comma-separated retry schedule.

    The schedule must be non-empty and non-decreasing so that a later
    attempt never waits less than an earlier one.
    """
    parts = [p for p in (s.strip() for s in value.split(",")) if p]
    if not parts:
        raise ConfigError("Retry schedule is empty")

    schedule = tuple(parse_duration(p) for p in parts)
    for earlier, later in zip(schedule, schedule[1:]):
        if later < earlier:
            raise ConfigError(f"Retry schedule must be non-decreasing: {value!r}")
    return schedule


def base_delay(schedule: Sequence[timedelta], attempt: int) -> timedelta:
    """Base delay after the given 1-based attempt."""
    index = min(max(attempt, 1) - 1, len(schedule) - 1)
    return schedule[index]


def next_attempt_delay(
    schedule: Sequence[timedelta],
    attempt: int,
    jitter_ms: int,
    rng: Optional[random.Random] = None,
) -> timedelta:
    """Base delay plus uniform jitter in [0, jitter_ms] milliseconds."""
    rng = rng or random
    jitter = rng.uniform(0, jitter_ms) if jitter_ms > 0 else 0.0
    return base_delay(schedule, attempt) + timedelta(milliseconds=jitter)
