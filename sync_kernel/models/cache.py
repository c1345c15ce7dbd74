"""Cache entry and cache traffic counters."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, model_validator


class CacheEntry(BaseModel):
    """A cached value with its validity window."""

    data: Any
    created_at: datetime
    expires_at: datetime                    # Logically absent from this instant on

    @model_validator(mode="after")
    def _expiry_after_creation(self) -> "CacheEntry":
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")
        return self

    def is_expired(self, current_time: datetime) -> bool:
        return current_time >= self.expires_at


class CacheStats(BaseModel):
    """Hit/miss counters. Diagnostic only, never billed against usage."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    expirations: int = 0
    invalidations: int = 0
