"""Tests for time utilities."""

from datetime import datetime, timedelta, timezone

from leadflow.infra.time import from_iso, now_millis, to_iso, utc_now


class TestUtcNow:
    """Tests for utc_now()."""

    def test_returns_utc_datetime(self):
        assert utc_now().tzinfo == timezone.utc

    def test_returns_current_time(self):
        before = datetime.now(timezone.utc)
        now = utc_now()
        after = datetime.now(timezone.utc)

        assert before <= now <= after


class TestConversions:
    """Tests for ISO and epoch helpers."""

    def test_now_millis_uses_clock(self):
        moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert now_millis(lambda: moment) == 1704067200000

    def test_iso_round_trip(self):
        moment = datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)
        assert from_iso(to_iso(moment)) == moment

    def test_none_passes_through(self):
        assert to_iso(None) is None
        assert from_iso(None) is None
        assert from_iso("") is None

    def test_naive_is_taken_as_utc(self):
        assert from_iso("2026-03-01T08:30:00") == datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)

    def test_offset_preserved(self):
        parsed = from_iso("2026-03-01T08:30:00+05:30")
        assert parsed.utcoffset() == timedelta(hours=5, minutes=30)
