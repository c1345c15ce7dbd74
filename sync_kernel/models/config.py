"""Sync kernel configuration."""

from typing import Dict, List

from pydantic import BaseModel, Field, PositiveFloat, model_validator

from sync_kernel.models.message import Origin
from sync_kernel.models.usage import QuotaConfig


class OriginsConfig(BaseModel):
    """Which feeds take part in the inbox, and which one wins on duplicates."""

    enabled: List[Origin] = [Origin.LIVE_STORE]
    primary: Origin = Origin.LIVE_STORE
    per_origin_limit: Dict[Origin, int] = {
        Origin.LIVE_STORE: 100,
        Origin.WEBHOOK: 15,
        Origin.SPREADSHEET: 15,
    }

    @model_validator(mode="after")
    def _primary_is_enabled(self) -> "OriginsConfig":
        if not self.enabled:
            raise ValueError("at least one origin must be enabled")
        if self.primary not in self.enabled:
            raise ValueError(f"primary origin {self.primary.value} is not enabled")
        return self

    def limit_for(self, origin: Origin) -> int:
        return self.per_origin_limit.get(origin, 100)


class SyncConfig(BaseModel):
    """Configuration for the Sync Orchestrator and the components it wires."""

    cache_ttl_seconds: float = Field(gt=0, default=30.0)
    collection_ttl_seconds: Dict[str, PositiveFloat] = {}   # Per-collection override
    debounce_seconds: float = Field(ge=0, default=1.0)
    typing_debounce_seconds: float = Field(ge=0, default=0.5)
    quota: QuotaConfig = QuotaConfig()
    origins: OriginsConfig = OriginsConfig()

    aggregate_window: int = Field(ge=1, default=100)
    conversation_limit: int = Field(ge=1, default=25)
    message_limit: int = Field(ge=1, default=50)
    conversation_lookback_days: int = Field(ge=1, default=30)
    message_lookback_hours: int = Field(ge=1, default=12)
    max_presence_users: int = Field(ge=1, default=20)
    max_message_length: int = Field(ge=1, default=4096)

    conversations_collection: str = "conversations"
    messages_collection: str = "chat_messages"
    presence_collection: str = "user_presence"
    feed_collection: str = "messages"               # Live-store inbox feed
    feed_order_field: str = "Time"

    def ttl_for(self, collection: str) -> float:
        return self.collection_ttl_seconds.get(collection, self.cache_ttl_seconds)
