"""Tests for the data models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from sync_kernel.models import (
    Conversation,
    ConversationStatus,
    Direction,
    MessageCategory,
    Origin,
    OriginsConfig,
    Page,
    PresenceStatus,
    Priority,
    SenderRole,
    SyncConfig,
    UnifiedMessage,
    UserPresence,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _message(**overrides) -> UnifiedMessage:
    data = dict(
        id="m1",
        conversation_key="+15550100",
        counterparty_id="+15550100",
        display_name="Ava",
        subject="Tee",
        category=MessageCategory.ENQUIRY,
        free_text="Hi",
        occurred_at=T0,
        origin=Origin.WEBHOOK,
        sender_role=SenderRole.CUSTOMER,
        direction=Direction.INBOUND,
    )
    data.update(overrides)
    return UnifiedMessage(**data)


class TestUnifiedMessage:
    def test_is_frozen(self):
        message = _message()
        with pytest.raises(ValidationError):
            message.free_text = "changed"

    def test_dedup_key_ignores_id_and_origin(self):
        a = _message(id="x", origin=Origin.WEBHOOK)
        b = _message(id="y", origin=Origin.LIVE_STORE, occurred_at=datetime(2026, 3, 2, tzinfo=timezone.utc))
        assert a.dedup_key() == b.dedup_key()

    def test_to_document_uses_plain_values(self):
        doc = _message().to_document()
        assert "id" not in doc
        assert doc["category"] == "enquiry"
        assert doc["origin"] == "webhook"
        assert doc["occurred_at"] == T0

    def test_page_defaults(self):
        page = Page()
        assert page.items == []
        assert page.next_cursor is None


class TestConversation:
    def test_from_document_fills_defaults(self):
        conversation = Conversation.from_document("+15550100", {"unread_count": -2})

        assert conversation.counterparty_id == "+15550100"
        assert conversation.status == ConversationStatus.PENDING
        assert conversation.priority == Priority.MEDIUM
        assert conversation.unread_count == 0
        assert conversation.tags == set()

    def test_from_document_reads_stored_fields(self):
        conversation = Conversation.from_document("c1", {
            "counterparty_id": "+15550100",
            "status": "active",
            "priority": "high",
            "tags": ["vip", "vip"],
            "last_message_at": datetime(2026, 3, 1, 9, 0),
        })
        assert conversation.status == ConversationStatus.ACTIVE
        assert conversation.priority == Priority.HIGH
        assert conversation.tags == {"vip"}
        assert conversation.last_message_at == T0

    def test_from_document_tolerates_enum_casing(self):
        conversation = Conversation.from_document("c1", {"status": " Active ", "priority": "HIGH"})
        assert conversation.status == ConversationStatus.ACTIVE
        assert conversation.priority == Priority.HIGH

        presence = UserPresence.from_document({"user_id": "op1", "status": "Online"})
        assert presence.status == PresenceStatus.ONLINE

    def test_from_document_unknown_enum_values_get_defaults(self):
        conversation = Conversation.from_document("c1", {"status": "archived", "priority": 3})
        assert conversation.status == ConversationStatus.PENDING
        assert conversation.priority == Priority.MEDIUM

        presence = UserPresence.from_document({"user_id": "op1", "status": "busy"})
        assert presence.status == PresenceStatus.OFFLINE

    def test_presence_from_document(self):
        presence = UserPresence.from_document({"user_id": "op1", "is_typing": 1})
        assert presence.is_typing is True
        assert presence.typing_in_conversation is None


class TestConfig:
    def test_defaults(self):
        config = SyncConfig()
        assert config.cache_ttl_seconds == 30
        assert config.quota.read_ceiling == 500
        assert config.aggregate_window == 100
        assert config.origins.limit_for(Origin.WEBHOOK) == 15

    def test_collection_ttl_override(self):
        config = SyncConfig(collection_ttl_seconds={"user_presence": 5})
        assert config.ttl_for("user_presence") == 5
        assert config.ttl_for("conversations") == 30

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_collection_ttl_must_be_positive(self, ttl):
        with pytest.raises(ValidationError):
            SyncConfig(collection_ttl_seconds={"user_presence": ttl})

    def test_primary_must_be_enabled(self):
        with pytest.raises(ValidationError):
            OriginsConfig(enabled=[Origin.WEBHOOK], primary=Origin.LIVE_STORE)

    def test_rejects_empty_origins(self):
        with pytest.raises(ValidationError):
            OriginsConfig(enabled=[], primary=Origin.LIVE_STORE)
