"""Test WallClock and ManualClock."""

from datetime import datetime, timedelta, timezone

import pytest

from eventcore.core.clock import ManualClock, WallClock


class TestWallClock:
    def test_now_returns_utc(self):
        clock = WallClock()
        now = clock.now()
        assert now.tzinfo is not None
        assert now.tzinfo == timezone.utc

    def test_now_is_recent(self):
        clock = WallClock()
        diff = abs((datetime.now(timezone.utc) - clock.now()).total_seconds())
        assert diff < 1.0

    def test_monotonic_never_decreases(self):
        clock = WallClock()
        first = clock.monotonic()
        assert clock.monotonic() >= first


class TestManualClock:
    def test_default_start(self):
        clock = ManualClock()
        assert clock.now() == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert clock.monotonic() == 0.0

    def test_custom_start(self, manual_clock):
        assert manual_clock.now() == datetime(2024, 6, 1, tzinfo=timezone.utc)

    def test_advance_moves_both_scales(self, manual_clock):
        start = manual_clock.now()
        manual_clock.advance(90)
        assert manual_clock.now() == start + timedelta(seconds=90)
        assert manual_clock.monotonic() == 90.0

    def test_time_frozen_until_advanced(self, manual_clock):
        assert manual_clock.now() == manual_clock.now()

    def test_cannot_go_backwards(self, manual_clock):
        with pytest.raises(ValueError, match="cannot go backwards"):
            manual_clock.advance(-1)

    def test_zero_advance_ok(self, manual_clock):
        manual_clock.advance(0)  # Should not raise
