"""Tests for the Aggregator."""

from datetime import datetime, timedelta, timezone

import pytest

from sync_kernel.aggregation.aggregator import Aggregator
from sync_kernel.models.config import OriginsConfig
from sync_kernel.models.message import (
    Direction,
    MessageCategory,
    Origin,
    SenderRole,
    UnifiedMessage,
)
from sync_kernel.models.raw import LiveStoreRecord, WebhookRecord
from sync_kernel.normalization.normalizer import FeedNormalizer

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
ALL_ORIGINS = [Origin.LIVE_STORE, Origin.WEBHOOK, Origin.SPREADSHEET]


def _message(
    id: str,
    minutes: int,
    origin: Origin = Origin.LIVE_STORE,
    phone: str = "+15550100",
    text: str = "Hi",
    subject: str = "Tee",
    category: MessageCategory = MessageCategory.ENQUIRY,
) -> UnifiedMessage:
    return UnifiedMessage(
        id=id,
        conversation_key=phone,
        counterparty_id=phone,
        display_name="Ava",
        subject=subject,
        category=category,
        free_text=text,
        occurred_at=T0 + timedelta(minutes=minutes),
        origin=origin,
        sender_role=SenderRole.CUSTOMER,
        direction=Direction.INBOUND,
    )


class TestAggregator:
    def setup_method(self):
        self.origins = OriginsConfig(enabled=ALL_ORIGINS, primary=Origin.LIVE_STORE)
        self.aggregator = Aggregator(self.origins, window_size=100)

    def test_cross_origin_duplicates_merge(self):
        view = self.aggregator.aggregate({
            Origin.LIVE_STORE: [_message("a", 0)],
            Origin.WEBHOOK: [_message("b", 1, origin=Origin.WEBHOOK)],
        })

        assert len(view) == 1
        assert view.messages[0].origin == Origin.LIVE_STORE
        assert view.merged_duplicates == 1

    def test_same_origin_messages_never_merge(self):
        view = self.aggregator.aggregate({
            Origin.LIVE_STORE: [_message("a", 0), _message("b", 5)],
        })
        assert len(view) == 2
        assert view.merged_duplicates == 0

    def test_each_primary_copy_absorbs_one_secondary_copy(self):
        view = self.aggregator.aggregate({
            Origin.LIVE_STORE: [_message("a", 0), _message("b", 5)],
            Origin.WEBHOOK: [_message("w1", 0, origin=Origin.WEBHOOK), _message("w2", 5, origin=Origin.WEBHOOK)],
            Origin.SPREADSHEET: [_message("s1", 0, origin=Origin.SPREADSHEET)],
        })
        assert len(view) == 2
        assert view.merged_duplicates == 3
        assert {m.origin for m in view.messages} == {Origin.LIVE_STORE}

    def test_window_keeps_most_recent(self):
        origins = OriginsConfig(per_origin_limit={Origin.LIVE_STORE: 500})
        aggregator = Aggregator(origins, window_size=100)
        feed = [_message(f"m{i}", i, text=f"msg {i}") for i in range(150)]

        view = aggregator.aggregate({Origin.LIVE_STORE: feed})

        assert len(view) == 100
        assert view.truncated == 50
        kept = {m.id for m in view.messages}
        assert kept == {f"m{i}" for i in range(50, 150)}
        assert view.messages[0].id == "m149"

    def test_per_origin_limit_keeps_newest_of_each_feed(self):
        webhook = [_message(f"w{i}", i, origin=Origin.WEBHOOK, text=f"w {i}") for i in range(20)]
        view = self.aggregator.aggregate({Origin.WEBHOOK: list(reversed(webhook))})

        assert len(view) == 15
        assert {m.id for m in view.messages} == {f"w{i}" for i in range(5, 20)}

    def test_sorted_newest_first_across_origins(self):
        view = self.aggregator.aggregate({
            Origin.LIVE_STORE: [_message("a", 1, text="one")],
            Origin.WEBHOOK: [_message("b", 3, origin=Origin.WEBHOOK, text="three")],
            Origin.SPREADSHEET: [_message("c", 2, origin=Origin.SPREADSHEET, text="two")],
        })
        assert [m.id for m in view.messages] == ["b", "c", "a"]

    def test_disabled_origins_are_ignored(self):
        aggregator = Aggregator(OriginsConfig(), window_size=100)
        view = aggregator.aggregate({
            Origin.LIVE_STORE: [_message("a", 0)],
            Origin.SPREADSHEET: [_message("s", 1, origin=Origin.SPREADSHEET, text="other")],
        })
        assert [m.id for m in view.messages] == ["a"]

    def test_category_counts_include_every_category(self):
        view = self.aggregator.aggregate({
            Origin.LIVE_STORE: [
                _message("a", 0, category=MessageCategory.NEW_ORDER, text="x"),
                _message("b", 1, category=MessageCategory.NEW_ORDER, text="y"),
                _message("c", 2, category=MessageCategory.COMPLAINT, text="z"),
            ],
        })
        counts = view.category_counts()
        assert counts[MessageCategory.NEW_ORDER] == 2
        assert counts[MessageCategory.COMPLAINT] == 1
        assert counts[MessageCategory.RETURN] == 0
        assert len(view.new_orders()) == 2

    def test_thread_is_oldest_first(self):
        view = self.aggregator.aggregate({
            Origin.LIVE_STORE: [
                _message("a", 5, text="later"),
                _message("b", 1, text="earlier"),
                _message("c", 3, phone="+15550199", text="someone else"),
            ],
        })
        assert [m.id for m in view.thread("+15550100")] == ["b", "a"]

    def test_rejects_empty_window(self):
        with pytest.raises(ValueError):
            Aggregator(window_size=0)


class TestTwoOriginScenario:
    """Same message from the webhook and the live store, in their own field layouts."""

    def _feeds(self):
        normalizer = FeedNormalizer()
        webhook = normalizer.normalize(WebhookRecord(fields={
            "phone": "+1", "name": "Ava", "message": "Hi", "product": "Tee",
        }))
        live = normalizer.normalize(LiveStoreRecord(doc_id="doc1", fields={
            "Phone Number": "+1", "Profile Name": "Ava", "Message": "Hi", "product": "Tee",
        }))
        return {Origin.WEBHOOK: [webhook], Origin.LIVE_STORE: [live]}

    @pytest.mark.parametrize("primary", [Origin.LIVE_STORE, Origin.WEBHOOK])
    def test_one_message_from_primary_origin(self, primary):
        origins = OriginsConfig(enabled=[Origin.LIVE_STORE, Origin.WEBHOOK], primary=primary)
        view = Aggregator(origins).aggregate(self._feeds())

        assert len(view) == 1
        assert view.messages[0].origin == primary
        assert view.messages[0].display_name == "Ava"
