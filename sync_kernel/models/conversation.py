"""Conversations, presence and the caller's identity."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Set, Type, TypeVar

from pydantic import BaseModel, Field

from sync_kernel.clock import ensure_utc, utcnow

E = TypeVar("E", bound=Enum)


def _coerce_enum(enum_cls: Type[E], value: Any, default: E) -> E:
    """Stored enum values have drifted in casing; anything unknown gets the default."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


class ConversationStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Conversation(BaseModel):
    """One customer thread, keyed by the customer's number unless created remotely."""

    id: str
    counterparty_id: str
    counterparty_name: Optional[str] = None
    assigned_operator_id: Optional[str] = None
    status: ConversationStatus = ConversationStatus.PENDING
    last_message_at: datetime
    unread_count: int = Field(ge=0, default=0)
    priority: Priority = Priority.MEDIUM
    tags: Set[str] = set()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc_id: str, data: dict) -> "Conversation":
        """Build a conversation from a stored document, filling missing fields."""
        now = utcnow()
        last_message_at = data.get("last_message_at")
        return cls(
            id=doc_id,
            counterparty_id=str(data.get("counterparty_id") or doc_id),
            counterparty_name=data.get("counterparty_name"),
            assigned_operator_id=data.get("assigned_operator_id"),
            status=_coerce_enum(ConversationStatus, data.get("status"), ConversationStatus.PENDING),
            last_message_at=ensure_utc(last_message_at) if last_message_at else now,
            unread_count=max(0, int(data.get("unread_count") or 0)),
            priority=_coerce_enum(Priority, data.get("priority"), Priority.MEDIUM),
            tags=set(data.get("tags") or []),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class PresenceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    AWAY = "away"


class UserPresence(BaseModel):
    user_id: str
    status: PresenceStatus = PresenceStatus.OFFLINE
    last_seen: datetime
    is_typing: bool = False
    typing_in_conversation: Optional[str] = None

    @classmethod
    def from_document(cls, data: dict) -> "UserPresence":
        last_seen = data.get("last_seen")
        return cls(
            user_id=data["user_id"],
            status=_coerce_enum(PresenceStatus, data.get("status"), PresenceStatus.OFFLINE),
            last_seen=ensure_utc(last_seen) if last_seen else utcnow(),
            is_typing=bool(data.get("is_typing", False)),
            typing_in_conversation=data.get("typing_in_conversation"),
        )


class UserRole(str, Enum):
    OPERATOR = "operator"
    BUSINESS_OWNER = "business_owner"
    CUSTOMER = "customer"


class AuthContext(BaseModel):
    """The signed-in user on whose behalf writes are made."""

    user_id: str
    role: UserRole = UserRole.OPERATOR
