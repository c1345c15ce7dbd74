"""Tests for the Feed Normalizer."""

from datetime import datetime, timezone

import pytest

from sync_kernel.models.message import Direction, MessageCategory, Origin, SenderRole
from sync_kernel.models.raw import LiveStoreRecord, SheetRow, WebhookRecord
from sync_kernel.normalization.normalizer import (
    DEFAULT_NAME,
    DEFAULT_SUBJECT,
    DEFAULT_TEXT,
    FeedNormalizer,
    classify_category,
    coerce_timestamp,
    normalize_counterparty,
    rows_from_sheet_values,
)

RECEIVED = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestClassifyCategory:
    @pytest.mark.parametrize("label,expected", [
        ("New Order", MessageCategory.NEW_ORDER),
        ("  purchase   request ", MessageCategory.NEW_ORDER),
        ("Inquiry", MessageCategory.ENQUIRY),
        ("Follow-Up", MessageCategory.FOLLOW_UP),
        ("Complaints", MessageCategory.COMPLAINT),
        ("refund", MessageCategory.RETURN),
        ("new_order", MessageCategory.NEW_ORDER),
    ])
    def test_synonyms(self, label, expected):
        assert classify_category(label) == expected

    def test_unknown_and_missing_default_to_enquiry(self):
        assert classify_category("something odd") == MessageCategory.ENQUIRY
        assert classify_category(None) == MessageCategory.ENQUIRY


class TestCoerceTimestamp:
    def test_shapes(self):
        expected = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        epoch = expected.timestamp()

        assert coerce_timestamp("2026-03-01T12:00:00Z") == expected
        assert coerce_timestamp(epoch) == expected
        assert coerce_timestamp(epoch * 1000) == expected
        assert coerce_timestamp({"seconds": epoch}) == expected
        assert coerce_timestamp(datetime(2026, 3, 1, 12, 0)) == expected

    def test_unparseable_is_none(self):
        assert coerce_timestamp("yesterday-ish") is None
        assert coerce_timestamp("") is None
        assert coerce_timestamp(True) is None

    @pytest.mark.parametrize("value", [1e20, -1e20, float("nan"), float("inf"), float("-inf")])
    def test_out_of_range_epochs_are_none(self, value):
        assert coerce_timestamp(value) is None
        assert coerce_timestamp({"seconds": value}) is None


class TestFeedNormalizer:
    def setup_method(self):
        self.normalizer = FeedNormalizer()

    def test_legacy_and_modern_fields_normalize_identically(self):
        legacy = LiveStoreRecord(doc_id="a", fields={
            "Phone Number": "+1 (555) 010-0100",
            "Profile Name": "Ava",
            "Message": "Is the Tee in stock?",
            "Product": "Tee",
            "Category": "New Order",
            "Sender": "Operator",
        })
        modern = LiveStoreRecord(doc_id="b", fields={
            "phone_number": "+15550100100",
            "name": "Ava",
            "message": "Is the Tee in stock?",
            "product": "Tee",
            "category": "new order",
            "sender": "operator",
        })

        a = self.normalizer.normalize(legacy, RECEIVED)
        b = self.normalizer.normalize(modern, RECEIVED)

        assert a.category == b.category == MessageCategory.NEW_ORDER
        assert a.sender_role == b.sender_role == SenderRole.OPERATOR
        assert a.direction == Direction.OUTBOUND
        assert a.free_text == b.free_text
        assert a.counterparty_id == b.counterparty_id == "+15550100100"

    def test_empty_record_uses_defaults(self):
        message = self.normalizer.normalize(LiveStoreRecord(fields={}), RECEIVED)

        assert message.display_name == DEFAULT_NAME
        assert message.free_text == DEFAULT_TEXT
        assert message.subject == DEFAULT_SUBJECT
        assert message.category == MessageCategory.ENQUIRY
        assert message.sender_role == SenderRole.CUSTOMER
        assert message.occurred_at == RECEIVED
        assert message.id.startswith("live_store-")

    def test_out_of_range_timestamp_falls_back_to_receipt_time(self):
        message = self.normalizer.normalize(
            WebhookRecord(fields={"phone": "+15550100", "message": "Hi", "timestamp": 1e20}), RECEIVED
        )
        assert message.occurred_at == RECEIVED

        live = self.normalizer.normalize(
            LiveStoreRecord(doc_id="a", fields={"Message": "Hi", "Time": float("nan")}), RECEIVED
        )
        assert live.occurred_at == RECEIVED

    def test_conversation_key_defaults_to_counterparty(self):
        message = self.normalizer.normalize(
            WebhookRecord(fields={"phone": "+1 555 0100", "message": "Hi"}), RECEIVED
        )
        assert message.origin == Origin.WEBHOOK
        assert message.conversation_key == "+15550100"

    def test_any_non_operator_sender_is_customer(self):
        message = self.normalizer.normalize(
            WebhookRecord(fields={"phone": "1", "message": "Hi", "sender": "bot"}), RECEIVED
        )
        assert message.sender_role == SenderRole.CUSTOMER
        assert message.direction == Direction.INBOUND

    def test_content_ids_are_stable(self):
        record = WebhookRecord(fields={"phone": "1", "message": "Hi", "timestamp": "2026-03-01T10:00:00Z"})
        first = self.normalizer.normalize(record, RECEIVED)
        second = self.normalizer.normalize(record, RECEIVED)
        assert first.id == second.id

    def test_sheet_rows_are_positional(self):
        values = [
            ["phone_number", "name", "Product", "Category", "Intent", "Message", "timestamp"],
            ["+1 555 0101", "Tee Fan", "Tee", "Complaint", "Refund", "Wrong size", "2026-03-01T08:00:00Z"],
            ["+15550102"],
        ]
        rows = rows_from_sheet_values(values)
        assert [r.row_index for r in rows] == [0, 1]

        first, short = self.normalizer.normalize_many(rows, RECEIVED)
        assert first.origin == Origin.SPREADSHEET
        assert first.counterparty_id == "+15550101"
        assert first.category == MessageCategory.COMPLAINT
        assert first.intent == "Refund"
        assert first.occurred_at == datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        assert short.free_text == DEFAULT_TEXT
        assert short.occurred_at == RECEIVED

    def test_stored_documents_read_back(self):
        sent = self.normalizer.normalize(
            WebhookRecord(fields={
                "phone": "+15550100", "name": "Ava", "message": "Hi",
                "product": "Tee", "category": "Follow up",
            }),
            RECEIVED,
        )
        restored = self.normalizer.normalize(
            LiveStoreRecord(doc_id=sent.id, fields=sent.to_document()), RECEIVED
        )
        assert restored.category == MessageCategory.FOLLOW_UP
        assert restored.dedup_key() == sent.dedup_key()
        assert restored.occurred_at == sent.occurred_at


def test_normalize_counterparty_strips_formatting():
    assert normalize_counterparty("+1 (555) 010-0100") == "+15550100100"
    assert normalize_counterparty("") == "N/A"


def test_sheet_row_model_defaults():
    row = SheetRow()
    assert row.kind == "spreadsheet"
    assert row.cells == []
