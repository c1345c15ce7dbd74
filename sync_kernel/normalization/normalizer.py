"""
Feed Normalizer: raw feed records → UnifiedMessage.

Every origin has its own field tables because each one has drifted on its
own (capitalised keys in one era of data, lowercase in another). For each
logical field the first present, non-empty source field wins; otherwise a
fixed default is used. A record is never dropped.
"""

import hashlib
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sync_kernel.clock import ensure_utc, utcnow
from sync_kernel.models.message import (
    Direction,
    MessageCategory,
    Origin,
    SenderRole,
    UnifiedMessage,
)
from sync_kernel.models.raw import LiveStoreRecord, RawRecord, SheetRow, WebhookRecord

logger = logging.getLogger(__name__)

DEFAULT_NAME = "Unknown Customer"
DEFAULT_TEXT = "No message content"
DEFAULT_SUBJECT = "No product specified"
DEFAULT_COUNTERPARTY = "N/A"
DEFAULT_INTENT = "General"
DEFAULT_MESSAGE_TYPE = "text"
DEFAULT_CATEGORY = MessageCategory.ENQUIRY

CATEGORY_SYNONYMS: Dict[str, MessageCategory] = {
    "new order": MessageCategory.NEW_ORDER,
    "new_order": MessageCategory.NEW_ORDER,
    "neworder": MessageCategory.NEW_ORDER,
    "new-order": MessageCategory.NEW_ORDER,
    "order": MessageCategory.NEW_ORDER,
    "purchase request": MessageCategory.NEW_ORDER,
    "purchaserequest": MessageCategory.NEW_ORDER,
    "enquiry": MessageCategory.ENQUIRY,
    "inquiry": MessageCategory.ENQUIRY,
    "question": MessageCategory.ENQUIRY,
    "general": MessageCategory.ENQUIRY,
    "follow up": MessageCategory.FOLLOW_UP,
    "followup": MessageCategory.FOLLOW_UP,
    "follow-up": MessageCategory.FOLLOW_UP,
    "follow_up": MessageCategory.FOLLOW_UP,
    "complaint": MessageCategory.COMPLAINT,
    "complaints": MessageCategory.COMPLAINT,
    "issue": MessageCategory.COMPLAINT,
    "return": MessageCategory.RETURN,
    "returns": MessageCategory.RETURN,
    "return request": MessageCategory.RETURN,
    "refund": MessageCategory.RETURN,
}

# Field priority per origin. Canonical snake_case names come last in the
# live-store table: they are what the kernel itself writes back.
LIVE_STORE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "id": ("id",),
    "conversation_key": ("conversationId", "conversation_id", "conversation_key"),
    "counterparty_id": ("Phone Number", "phone_number", "Phone_number", "phone", "counterparty_id"),
    "display_name": ("Profile Name", "name", "Name", "customer_name", "Customer_name", "display_name"),
    "subject": ("product", "Product", "subject"),
    "category": ("category", "Category"),
    "intent": ("intent", "Intent"),
    "free_text": ("Message", "message", "Message_body", "message_body", "content", "free_text"),
    "sender": ("Sender", "sender", "senderType", "sender_role"),
    "message_type": ("Type", "type", "messageType", "message_type"),
    "occurred_at": ("ReceivedAt", "Time", "time", "timestamp", "createdAt", "updatedAt", "occurred_at"),
}

WEBHOOK_FIELDS: Dict[str, Tuple[str, ...]] = {
    "id": ("id",),
    "conversation_key": ("conversationId", "conversation_id"),
    "counterparty_id": ("phone_number", "phone", "Phone Number", "Phone_number"),
    "display_name": ("name", "Name", "Profile Name"),
    "subject": ("product", "Product"),
    "category": ("category", "Category"),
    "intent": ("intent", "Intent"),
    "free_text": ("message", "Message"),
    "sender": ("sender", "Sender"),
    "message_type": ("message_type", "messageType"),
    "occurred_at": ("timestamp", "Timestamp", "time"),
}

SHEET_COLUMNS: Tuple[str, ...] = (
    "phone_number", "name", "Product", "Category", "Intent", "Message", "timestamp",
)

SHEET_FIELDS: Dict[str, Tuple[str, ...]] = {
    "counterparty_id": ("phone_number",),
    "display_name": ("name",),
    "subject": ("Product",),
    "category": ("Category",),
    "intent": ("Intent",),
    "free_text": ("Message",),
    "occurred_at": ("timestamp",),
}

_PHONE_NOISE = re.compile(r"[\s\-\.\(\)]")
_WHITESPACE = re.compile(r"\s+")


def classify_category(value: Any) -> MessageCategory:
    """Map a free-form category label onto the fixed category set."""
    label = _WHITESPACE.sub(" ", str(value or "")).strip().lower()
    category = CATEGORY_SYNONYMS.get(label)
    if category is None:
        if label:
            logger.debug("Unknown category %r, defaulting to %s", value, DEFAULT_CATEGORY.value)
        return DEFAULT_CATEGORY
    return category


def normalize_counterparty(value: Any) -> str:
    """Strip formatting from a phone number so copies compare equal."""
    cleaned = _PHONE_NOISE.sub("", str(value or ""))
    return cleaned or DEFAULT_COUNTERPARTY


def coerce_timestamp(value: Any) -> Optional[datetime]:
    """
    Accept the timestamp shapes the feeds have used over time: datetimes,
    store timestamps ({"seconds": n} or objects with to_datetime()), epoch
    numbers (seconds or milliseconds) and ISO-8601 strings.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if hasattr(value, "to_datetime"):
        return ensure_utc(value.to_datetime())
    if isinstance(value, dict) and "seconds" in value:
        return coerce_timestamp(value["seconds"])
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.debug("Epoch timestamp %r is out of range", value)
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def rows_from_sheet_values(values: Sequence[Sequence[Any]]) -> List[SheetRow]:
    """Turn a spreadsheet values grid into rows, skipping the header row."""
    rows = []
    for index, cells in enumerate(values[1:]):
        rows.append(SheetRow(cells=["" if c is None else str(c) for c in cells], row_index=index))
    return rows


class FeedNormalizer:
    """One normalization function per raw record kind."""

    def __init__(self):
        self._by_kind: Dict[str, Callable[..., UnifiedMessage]] = {
            "live_store": self.normalize_live_store,
            "webhook": self.normalize_webhook,
            "spreadsheet": self.normalize_sheet_row,
        }

    def normalize(
        self, record: RawRecord, received_at: Optional[datetime] = None
    ) -> UnifiedMessage:
        return self._by_kind[record.kind](record, received_at)

    def normalize_many(
        self, records: Iterable[RawRecord], received_at: Optional[datetime] = None
    ) -> List[UnifiedMessage]:
        if received_at is None:
            received_at = utcnow()
        return [self.normalize(record, received_at) for record in records]

    def normalize_live_store(
        self, record: LiveStoreRecord, received_at: Optional[datetime] = None
    ) -> UnifiedMessage:
        fields = dict(record.fields)
        if record.doc_id:
            fields["id"] = record.doc_id
        return self._build(fields, LIVE_STORE_FIELDS, Origin.LIVE_STORE, received_at)

    def normalize_webhook(
        self, record: WebhookRecord, received_at: Optional[datetime] = None
    ) -> UnifiedMessage:
        return self._build(record.fields, WEBHOOK_FIELDS, Origin.WEBHOOK, received_at)

    def normalize_sheet_row(
        self, row: SheetRow, received_at: Optional[datetime] = None
    ) -> UnifiedMessage:
        # Spreadsheet rows are always customer messages; no sender column exists.
        fields = dict(zip(SHEET_COLUMNS, row.cells))
        return self._build(fields, SHEET_FIELDS, Origin.SPREADSHEET, received_at)

    def _build(
        self,
        fields: Dict[str, Any],
        table: Dict[str, Tuple[str, ...]],
        origin: Origin,
        received_at: Optional[datetime],
    ) -> UnifiedMessage:
        def pick(logical: str) -> Any:
            for name in table.get(logical, ()):
                value = fields.get(name)
                if value is not None and value != "":
                    return value
            return None

        fallbacks = []

        counterparty_id = normalize_counterparty(pick("counterparty_id"))
        if counterparty_id == DEFAULT_COUNTERPARTY:
            fallbacks.append("counterparty_id")

        display_name = pick("display_name")
        if display_name is None:
            fallbacks.append("display_name")

        free_text = pick("free_text")
        if free_text is None:
            fallbacks.append("free_text")

        subject = pick("subject")
        occurred_at = coerce_timestamp(pick("occurred_at"))
        if occurred_at is None:
            fallbacks.append("occurred_at")
            occurred_at = received_at or utcnow()

        sender = str(pick("sender") or SenderRole.CUSTOMER.value)
        sender_role = (
            SenderRole.OPERATOR if sender.strip().lower() == "operator" else SenderRole.CUSTOMER
        )

        text = DEFAULT_TEXT if free_text is None else str(free_text)
        subject_text = DEFAULT_SUBJECT if subject is None else str(subject)
        message_id = pick("id")
        if message_id is None:
            message_id = _content_id(origin, counterparty_id, text, subject_text, occurred_at)

        if fallbacks:
            logger.debug("%s record %s used defaults for %s", origin.value, message_id, fallbacks)

        return UnifiedMessage(
            id=str(message_id),
            conversation_key=str(pick("conversation_key") or counterparty_id),
            counterparty_id=counterparty_id,
            display_name=DEFAULT_NAME if display_name is None else str(display_name),
            subject=subject_text,
            category=classify_category(pick("category")),
            free_text=text,
            occurred_at=occurred_at,
            origin=origin,
            sender_role=sender_role,
            direction=(
                Direction.OUTBOUND if sender_role == SenderRole.OPERATOR else Direction.INBOUND
            ),
            intent=str(pick("intent") or DEFAULT_INTENT),
            message_type=str(pick("message_type") or DEFAULT_MESSAGE_TYPE),
        )


def _content_id(
    origin: Origin, counterparty_id: str, text: str, subject: str, occurred_at: datetime
) -> str:
    digest = hashlib.sha256(
        "|".join([counterparty_id, text, subject, occurred_at.isoformat()]).encode()
    ).hexdigest()
    return f"{origin.value}-{digest[:16]}"
