"""
Usage Meter: rolling counters of remote reads and writes.

The window resets lazily, the first time the meter is consulted after
`window_hours` have elapsed. There is no background timer.

under_limit() is advisory: callers check it before a remote read and skip
the read (no retry) when it answers False.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sync_kernel.clock import utcnow
from sync_kernel.models.usage import QuotaConfig, UsageLevel, UsageStats

logger = logging.getLogger(__name__)


class UsageMeter:
    """Read/write budget for the metered remote store."""

    def __init__(
        self,
        config: Optional[QuotaConfig] = None,
        current_time: Optional[datetime] = None,
    ):
        self.config = config or QuotaConfig()
        self._stats = UsageStats(window_start=current_time or utcnow())

    def _roll_window(self, current_time: Optional[datetime]) -> None:
        if current_time is None:
            current_time = utcnow()
        elapsed = current_time - self._stats.window_start
        if elapsed >= timedelta(hours=self.config.window_hours):
            logger.info(
                "Usage window reset after %s (reads=%d, writes=%d)",
                elapsed, self._stats.reads, self._stats.writes,
            )
            self._stats = UsageStats(window_start=current_time)

    def record_reads(self, count: int = 1, current_time: Optional[datetime] = None) -> None:
        if count < 0:
            raise ValueError("count must be non-negative")
        self._roll_window(current_time)
        self._stats.reads += count
        logger.debug("Remote reads: %d (+%d)", self._stats.reads, count)

    def record_writes(self, count: int = 1, current_time: Optional[datetime] = None) -> None:
        if count < 0:
            raise ValueError("count must be non-negative")
        self._roll_window(current_time)
        self._stats.writes += count
        logger.debug("Remote writes: %d (+%d)", self._stats.writes, count)

    def snapshot(self, current_time: Optional[datetime] = None) -> UsageStats:
        """Copy of the counters for the current window."""
        self._roll_window(current_time)
        return self._stats.model_copy()

    def under_limit(self, current_time: Optional[datetime] = None) -> bool:
        """False once reads exceed the read ceiling."""
        self._roll_window(current_time)
        return self._stats.reads <= self.config.read_ceiling

    def writes_under_limit(self, current_time: Optional[datetime] = None) -> bool:
        """False once writes exceed the write ceiling. Independent of reads."""
        self._roll_window(current_time)
        return self._stats.writes <= self.config.write_ceiling

    def level(self, current_time: Optional[datetime] = None) -> UsageLevel:
        """Classify read consumption so callers can warn before blocking."""
        self._roll_window(current_time)
        reads = self._stats.reads
        if reads > self.config.read_ceiling:
            return UsageLevel.EXCEEDED
        if reads >= self.config.read_ceiling * self.config.warning_ratio:
            return UsageLevel.WARNING
        return UsageLevel.SAFE

    def remaining_reads(self, current_time: Optional[datetime] = None) -> int:
        self._roll_window(current_time)
        return max(0, self.config.read_ceiling - self._stats.reads)
