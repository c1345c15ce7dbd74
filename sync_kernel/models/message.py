"""Unified Message: the canonical record every feed is normalized into."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class Origin(str, Enum):
    LIVE_STORE = "live_store"       # Push-updated document store
    WEBHOOK = "webhook"             # Inbound webhook deliveries
    SPREADSHEET = "spreadsheet"     # Polled spreadsheet rows


class MessageCategory(str, Enum):
    NEW_ORDER = "new_order"
    ENQUIRY = "enquiry"
    FOLLOW_UP = "follow_up"
    COMPLAINT = "complaint"
    RETURN = "return"


class SenderRole(str, Enum):
    OPERATOR = "operator"
    CUSTOMER = "customer"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class UnifiedMessage(BaseModel):
    """
    One message, whatever feed it came from.

    `id` is only unique within its origin. Cross-origin identity is decided
    by the aggregator from content, never from `id`.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_key: str
    counterparty_id: str                    # Customer phone number, digits and '+' only
    display_name: str
    subject: str                            # Product the message is about
    category: MessageCategory
    free_text: str
    occurred_at: datetime
    origin: Origin
    sender_role: SenderRole
    direction: Direction
    intent: str = "General"
    message_type: str = "text"              # "text" | "image" | "file" | "voice"

    def dedup_key(self) -> tuple:
        """Content identity used to merge copies of a message across origins."""
        return (self.counterparty_id, self.free_text, self.subject)

    def to_document(self) -> dict:
        """Field layout written to the chat message collection."""
        data = self.model_dump(mode="python", exclude={"id"})
        for field in ("category", "origin", "sender_role", "direction"):
            data[field] = data[field].value
        return data


class Page(BaseModel):
    """One page of conversation history."""

    items: List[UnifiedMessage] = []        # Oldest first
    next_cursor: Optional[str] = None       # None once history is exhausted
