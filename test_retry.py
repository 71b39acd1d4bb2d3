"""
Tests for backoff schedule parsing and delay computation.
"""

import random
from datetime import timedelta

import pytest

from smsrelay.config import Settings
from smsrelay.errors import ConfigError
from smsrelay.retry import base_delay, next_attempt_delay, parse_duration, parse_schedule

SCHEDULE = parse_schedule("1s,4s,15s,60s")


class TestParsing:

    @pytest.mark.parametrize("raw,expected", [
        ("500ms", timedelta(milliseconds=500)),
        ("15s", timedelta(seconds=15)),
        ("2m", timedelta(minutes=2)),
        ("1h", timedelta(hours=1)),
        (" 1.5s ", timedelta(seconds=1.5)),
    ])
    def test_parse_duration(self, raw, expected):
        assert parse_duration(raw) == expected

    @pytest.mark.parametrize("raw", ["", "15", "fast", "-1s", "10d"])
    def test_parse_duration_rejects_garbage(self, raw):
        with pytest.raises(ConfigError):
            parse_duration(raw)

    def test_parse_schedule(self):
        assert SCHEDULE == (
            timedelta(seconds=1),
            timedelta(seconds=4),
            timedelta(seconds=15),
            timedelta(seconds=60),
        )

    def test_decreasing_schedule_rejected(self):
        with pytest.raises(ConfigError):
            parse_schedule("10s,1s")

    def test_empty_schedule_rejected(self):
        with pytest.raises(ConfigError):
            parse_schedule(" , ")

    def test_settings_fail_fast_on_bad_schedule(self):
        with pytest.raises(ValueError):
            Settings(RETRY_SCHEDULE="1s,soon")

    def test_settings_expose_parsed_schedule(self):
        assert Settings(RETRY_SCHEDULE="2s,30s").retry_schedule == (
            timedelta(seconds=2),
            timedelta(seconds=30),
        )


class TestDelays:

    def test_base_delay_by_attempt(self):
        assert [base_delay(SCHEDULE, n).total_seconds() for n in range(1, 7)] == [1, 4, 15, 60, 60, 60]

    def test_base_delays_never_decrease(self):
        delays = [base_delay(SCHEDULE, n) for n in range(1, len(SCHEDULE) + 1)]
        assert delays == sorted(delays)

    def test_jitter_is_bounded(self):
        rng = random.Random(42)
        for attempt in range(1, 5):
            delay = next_attempt_delay(SCHEDULE, attempt, 200, rng)
            base = base_delay(SCHEDULE, attempt)
            assert base <= delay <= base + timedelta(milliseconds=200)

    def test_jitter_does_not_invert_order(self):
        rng = random.Random(1)
        delays = [next_attempt_delay(SCHEDULE, n, 200, rng) for n in range(1, 5)]
        assert delays == sorted(delays)

    def test_zero_jitter_is_exact(self):
        assert next_attempt_delay(SCHEDULE, 2, 0) == timedelta(seconds=4)
