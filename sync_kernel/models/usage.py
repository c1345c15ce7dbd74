"""Usage accounting for the metered remote store."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class UsageLevel(str, Enum):
    SAFE = "safe"
    WARNING = "warning"     # At or above the warning ratio of the read ceiling
    EXCEEDED = "exceeded"   # Reads above the ceiling. Remote reads are disabled.


class QuotaConfig(BaseModel):
    """Daily read/write budget."""

    read_ceiling: int = Field(ge=1, default=500)
    write_ceiling: int = Field(ge=1, default=2000)
    warning_ratio: float = Field(gt=0, le=1, default=0.8)
    window_hours: float = Field(gt=0, default=24)


class UsageStats(BaseModel):
    """Counters for the current usage window."""

    reads: int = Field(ge=0, default=0)
    writes: int = Field(ge=0, default=0)
    window_start: datetime
