"""
Tests for datetime utility functions.
"""
from datetime import datetime, timedelta, timezone

import pytest

from adaptive_exam.core.datetime_utils import ensure_timezone_aware, seconds_since, utc_now


class TestUtcNow:
    def test_returns_timezone_aware_utc(self):
        assert utc_now().tzinfo == timezone.utc


class TestEnsureTimezoneAware:
    def test_naive_datetime_assumed_utc(self):
        naive = datetime(2024, 1, 15, 10, 30)
        aware = ensure_timezone_aware(naive)
        assert aware.tzinfo == timezone.utc
        assert aware.hour == 10

    def test_aware_datetime_unchanged(self):
        offset = timezone(timedelta(hours=2))
        dt = datetime(2024, 1, 15, 10, 30, tzinfo=offset)
        assert ensure_timezone_aware(dt) is dt

    def test_none_raises(self):
        with pytest.raises(ValueError):
            ensure_timezone_aware(None)


class TestSecondsSince:
    def test_elapsed(self):
        start = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        now = start + timedelta(minutes=2)
        assert seconds_since(start, now) == pytest.approx(120.0)

    def test_naive_start(self):
        start = datetime(2024, 1, 15, 10, 0)
        now = datetime(2024, 1, 15, 10, 0, 30, tzinfo=timezone.utc)
        assert seconds_since(start, now) == pytest.approx(30.0)
