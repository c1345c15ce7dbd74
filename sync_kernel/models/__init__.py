"""Sync kernel data models."""

from sync_kernel.models.cache import CacheEntry, CacheStats
from sync_kernel.models.config import OriginsConfig, SyncConfig
from sync_kernel.models.conversation import (
    AuthContext,
    Conversation,
    ConversationStatus,
    PresenceStatus,
    Priority,
    UserPresence,
    UserRole,
)
from sync_kernel.models.message import (
    Direction,
    MessageCategory,
    Origin,
    Page,
    SenderRole,
    UnifiedMessage,
)
from sync_kernel.models.raw import LiveStoreRecord, RawRecord, SheetRow, WebhookRecord
from sync_kernel.models.subscription import SubscriptionState
from sync_kernel.models.usage import QuotaConfig, UsageLevel, UsageStats

__all__ = [
    "AuthContext",
    "CacheEntry",
    "CacheStats",
    "Conversation",
    "ConversationStatus",
    "Direction",
    "LiveStoreRecord",
    "MessageCategory",
    "Origin",
    "OriginsConfig",
    "Page",
    "PresenceStatus",
    "Priority",
    "QuotaConfig",
    "RawRecord",
    "SenderRole",
    "SheetRow",
    "SubscriptionState",
    "SyncConfig",
    "UnifiedMessage",
    "UsageLevel",
    "UsageStats",
    "UserPresence",
    "UserRole",
    "WebhookRecord",
]
