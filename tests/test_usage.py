"""Tests for the Usage Meter."""

from datetime import datetime, timedelta, timezone

from sync_kernel.models.usage import QuotaConfig, UsageLevel
from sync_kernel.usage.meter import UsageMeter

T0 = datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc)


class TestUsageMeter:
    def setup_method(self):
        self.meter = UsageMeter(QuotaConfig(read_ceiling=10, write_ceiling=4), current_time=T0)

    def test_window_reset_after_24_hours(self):
        self.meter.record_reads(5000, current_time=T0 + timedelta(hours=1))
        self.meter.record_writes(300, current_time=T0 + timedelta(hours=1))

        before = self.meter.snapshot(current_time=T0 + timedelta(hours=23, minutes=59))
        assert before.reads == 5000

        after = self.meter.snapshot(current_time=T0 + timedelta(hours=24))
        assert after.reads == 0
        assert after.writes == 0
        assert after.window_start == T0 + timedelta(hours=24)

    def test_record_after_window_starts_fresh_count(self):
        self.meter.record_reads(9, current_time=T0)
        self.meter.record_reads(2, current_time=T0 + timedelta(hours=25))

        assert self.meter.snapshot(current_time=T0 + timedelta(hours=25)).reads == 2

    def test_under_limit_flips_exactly_when_ceiling_crossed(self):
        now = T0 + timedelta(minutes=1)
        for _ in range(10):
            assert self.meter.under_limit(current_time=now) is True
            self.meter.record_reads(1, current_time=now)

        # reads == ceiling is still within budget
        assert self.meter.under_limit(current_time=now) is True
        self.meter.record_reads(1, current_time=now)
        assert self.meter.under_limit(current_time=now) is False

    def test_writes_are_independent_of_reads(self):
        now = T0 + timedelta(minutes=1)
        self.meter.record_reads(50, current_time=now)

        assert self.meter.under_limit(current_time=now) is False
        assert self.meter.writes_under_limit(current_time=now) is True

        self.meter.record_writes(5, current_time=now)
        assert self.meter.writes_under_limit(current_time=now) is False

    def test_levels(self):
        now = T0 + timedelta(minutes=1)
        assert self.meter.level(current_time=now) == UsageLevel.SAFE

        self.meter.record_reads(8, current_time=now)
        assert self.meter.level(current_time=now) == UsageLevel.WARNING

        self.meter.record_reads(3, current_time=now)
        assert self.meter.level(current_time=now) == UsageLevel.EXCEEDED
        assert self.meter.remaining_reads(current_time=now) == 0

    def test_snapshot_is_a_copy(self):
        snapshot = self.meter.snapshot(current_time=T0)
        snapshot.reads = 100
        assert self.meter.snapshot(current_time=T0).reads == 0
