"""
Sync Orchestrator: the facade the dashboard talks to.

Wires the Expiring Cache, Usage Meter, Subscription Coalescer, Feed
Normalizer and Aggregator around a metered remote collection.

Behavioral Contract:
- Every remote read is preceded by a budget check; a read skipped for budget
  is not retried.
- Once reads exceed the ceiling, push subscriptions are torn down for the
  rest of the window and the inbox is served without the live-store feed.
- Writes are budgeted separately from reads.
- A message and its conversation update are written in one atomic batch.
- Remote failures move a subscription key to ERROR and are surfaced to the
  caller. Nothing is retried automatically.
- Snapshots from a superseded subscription are discarded.

States per subscription key:
  IDLE → PENDING (subscribe) → LIVE (first snapshot), any → ERROR (remote
  failure), LIVE → PENDING (subscribe again), any → IDLE (unsubscribe)
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4

import httpx

from sync_kernel.aggregation.aggregator import AggregateView, Aggregator
from sync_kernel.cache.store import ExpiringCache
from sync_kernel.clock import utcnow
from sync_kernel.errors import (
    AuthenticationRequired,
    DeliveryFailed,
    QuotaExceeded,
    SyncError,
    TransientRemoteError,
    ValidationError,
)
from sync_kernel.models.config import SyncConfig
from sync_kernel.models.conversation import (
    AuthContext,
    Conversation,
    ConversationStatus,
    PresenceStatus,
    Priority,
    UserPresence,
)
from sync_kernel.models.message import (
    Direction,
    MessageCategory,
    Origin,
    Page,
    SenderRole,
    UnifiedMessage,
)
from sync_kernel.models.raw import LiveStoreRecord, WebhookRecord
from sync_kernel.models.subscription import SubscriptionState
from sync_kernel.models.usage import UsageLevel, UsageStats
from sync_kernel.normalization.normalizer import (
    DEFAULT_NAME,
    DEFAULT_SUBJECT,
    FeedNormalizer,
    rows_from_sheet_values,
)
from sync_kernel.remote.base import (
    ArrayUnion,
    FieldFilter,
    Increment,
    Query,
    RemoteCollection,
    Snapshot,
    WriteAction,
    WriteOp,
)
from sync_kernel.remote.sheets import SheetSource
from sync_kernel.remote.transport import OutboundTransport, TransportError
from sync_kernel.subscriptions.coalescer import SubscriptionCoalescer, SubscriptionHandle
from sync_kernel.usage.meter import UsageMeter

logger = logging.getLogger(__name__)

INBOX_CACHE_KEY = "inbox"
LIVE_FEED_KEY = "feed:live_store"
SHEET_FEED_KEY = "feed:spreadsheet"

ErrorHandler = Callable[[SyncError], None]


def _noop() -> None:
    return None


class SyncOrchestrator:
    """
    One instance per signed-in dashboard session. Construct it, subscribe,
    and call close() when the session ends; nothing is shared between
    instances.
    """

    def __init__(
        self,
        remote: RemoteCollection,
        transport: Optional[OutboundTransport] = None,
        config: Optional[SyncConfig] = None,
        auth: Optional[AuthContext] = None,
        sheet_source: Optional[SheetSource] = None,
        normalizer: Optional[FeedNormalizer] = None,
    ):
        self.remote = remote
        self.transport = transport
        self.config = config or SyncConfig()
        self.auth = auth
        self.sheet_source = sheet_source

        self.cache = ExpiringCache(self.config.cache_ttl_seconds)
        self.meter = UsageMeter(self.config.quota)
        self.coalescer = SubscriptionCoalescer()
        self.normalizer = normalizer or FeedNormalizer()
        self.aggregator = Aggregator(self.config.origins, self.config.aggregate_window)

        self._states: Dict[str, SubscriptionState] = {}
        self._owners: Dict[str, SubscriptionHandle] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._threads: Dict[str, List[UnifiedMessage]] = {}
        self._feeds: Dict[Origin, List[UnifiedMessage]] = {origin: [] for origin in Origin}
        self._inbox_listeners: Dict[str, Callable[[AggregateView], None]] = {}
        self._live_feed_handle: Optional[SubscriptionHandle] = None
        self._typing_timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._background: Set[asyncio.Task] = set()
        self._stored_inbound: Set[Any] = set()
        self._warned_window: Optional[datetime] = None
        self._exhausted_window: Optional[datetime] = None
        self.writes_disabled = False

    # === BUDGET ===

    def usage(self) -> UsageStats:
        return self.meter.snapshot()

    def usage_level(self) -> UsageLevel:
        return self.meter.level()

    def _read_allowed(self, purpose: str) -> bool:
        """Budget check before any remote read."""
        level = self.meter.level()
        window = self.meter.snapshot().window_start

        if level == UsageLevel.EXCEEDED:
            if self._exhausted_window != window:
                self._exhausted_window = window
                logger.error(
                    "Read budget exhausted (%d reads); remote reads disabled until the window resets",
                    self.meter.snapshot().reads,
                )
                self._suspend_push()
            logger.info("Skipping %s: read budget exhausted", purpose)
            return False

        if level == UsageLevel.WARNING and self._warned_window != window:
            self._warned_window = window
            logger.warning(
                "Approaching read budget: %d of %d reads used",
                self.meter.snapshot().reads, self.config.quota.read_ceiling,
            )
        return True

    def _write_allowed(self, purpose: str) -> bool:
        if self.meter.writes_under_limit():
            self.writes_disabled = False
            return True
        if not self.writes_disabled:
            logger.error("Write budget exhausted; %s is temporarily disabled", purpose)
        self.writes_disabled = True
        return False

    def _suspend_push(self) -> None:
        """Tear down every push subscription for the rest of the usage window."""
        for key in self.coalescer.keys:
            self.coalescer.cancel(key)
            self._owners.pop(key, None)
            self._states[key] = SubscriptionState.IDLE
        self._live_feed_handle = None
        if self._inbox_listeners:
            self._publish_inbox()

    # === SUBSCRIPTION PLUMBING ===

    def state(self, key: str) -> SubscriptionState:
        return self._states.get(key, SubscriptionState.IDLE)

    def _set_state(self, key: str, state: SubscriptionState) -> None:
        previous = self._states.get(key, SubscriptionState.IDLE)
        if previous != state:
            logger.debug("Subscription %s: %s → %s", key, previous.value, state.value)
        self._states[key] = state

    def _fail(self, key: str, exc: Exception, on_error: Optional[ErrorHandler]) -> None:
        if isinstance(exc, SyncError):
            error = exc
        else:
            error = TransientRemoteError(f"Subscription {key} failed: {exc}")
            error.__cause__ = exc
        self.coalescer.cancel(key)
        self._set_state(key, SubscriptionState.ERROR)
        logger.warning("Subscription %s failed: %s", key, error)
        if on_error is not None:
            on_error(error)

    def _watch(
        self,
        key: str,
        cache_key: str,
        collection: str,
        build_query: Callable[[], Query],
        transform: Callable[[Snapshot], Any],
        callback: Callable[[Any], None],
        on_error: Optional[ErrorHandler],
    ) -> SubscriptionHandle:
        cached = self.cache.get(cache_key)
        if cached is not None:
            callback(cached)

        def factory(handle: SubscriptionHandle) -> Callable[[], None]:
            if not self._read_allowed(f"subscription {key}"):
                self._set_state(key, SubscriptionState.IDLE)
                return _noop

            def on_snapshot(snapshot: Snapshot) -> None:
                if not self.coalescer.is_current(key, handle):
                    logger.debug("Discarding late snapshot for %s from %r", key, handle)
                    return
                self.meter.record_reads(snapshot.size)
                try:
                    payload = transform(snapshot)
                except Exception as exc:
                    self._fail(key, exc, on_error)
                    return
                self.cache.set(cache_key, payload, self.config.ttl_for(collection))
                self._set_state(key, SubscriptionState.LIVE)
                callback(payload)
                if not self.meter.under_limit():
                    self._read_allowed(f"further updates for {key}")

            def on_remote_error(exc: Exception) -> None:
                if not self.coalescer.is_current(key, handle):
                    logger.debug("Discarding late error for %s: %s", key, exc)
                    return
                self._fail(key, exc, on_error)

            return self.remote.subscribe(build_query(), on_snapshot, on_remote_error)

        self._set_state(key, SubscriptionState.PENDING)
        self.coalescer.ensure(
            key,
            factory,
            self.config.debounce_seconds,
            on_error=lambda k, exc: self._fail(k, exc, on_error),
        )

        public = SubscriptionHandle(key)
        public.bind(lambda: self._release(key, public))
        self._owners[key] = public
        return public

    def _release(self, key: str, public: SubscriptionHandle) -> None:
        # A later subscriber on the same key owns it now; leave theirs alone.
        if self._owners.get(key) is not public:
            return
        del self._owners[key]
        self.coalescer.cancel(key)
        self._states.pop(key, None)

    # === CONVERSATIONS ===

    def subscribe_conversations(
        self,
        callback: Callable[[List[Conversation]], None],
        operator_id: Optional[str] = None,
        limit: Optional[int] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> SubscriptionHandle:
        """Recent conversations, newest first, optionally only those assigned to one operator."""
        limit = limit or self.config.conversation_limit
        scope = operator_id or "all"
        collection = self.config.conversations_collection

        def build_query() -> Query:
            since = utcnow() - timedelta(days=self.config.conversation_lookback_days)
            filters = [FieldFilter(field="updated_at", op=">=", value=since)]
            if operator_id:
                filters.insert(0, FieldFilter(field="assigned_operator_id", value=operator_id))
            return Query(
                collection=collection,
                filters=filters,
                order_by="updated_at",
                descending=True,
                limit=limit,
            )

        def transform(snapshot: Snapshot) -> List[Conversation]:
            conversations = [Conversation.from_document(d.id, d.data) for d in snapshot.docs]
            for conversation in conversations:
                self._conversations[conversation.id] = conversation
            return conversations

        return self._watch(
            f"conversations:{scope}",
            f"conversations:{scope}:{limit}",
            collection,
            build_query,
            transform,
            callback,
            on_error,
        )

    def conversation(self, conversation_key: str) -> Optional[Conversation]:
        """Last known state of a conversation, without touching the remote store."""
        return self._conversations.get(conversation_key)

    async def _lookup_conversation(self, conversation_key: str) -> Tuple[Optional[Conversation], bool]:
        """
        Returns (conversation, known). `known` is False when the remote store
        could not be consulted, in which case None does not mean "absent".
        """
        conversation = self._conversations.get(conversation_key)
        if conversation is not None:
            return conversation, True
        if not self._read_allowed(f"lookup of conversation {conversation_key}"):
            return None, False

        try:
            doc = await self.remote.get(self.config.conversations_collection, conversation_key)
        except QuotaExceeded as e:
            logger.error("Remote store refused conversation lookup: %s", e)
            return None, False
        except SyncError:
            raise
        except Exception as e:
            raise TransientRemoteError(f"Conversation lookup failed: {e}") from e
        self.meter.record_reads(1)

        if doc is None:
            return None, True
        conversation = Conversation.from_document(doc.id, doc.data)
        self._conversations[conversation_key] = conversation
        return conversation, True

    async def assign_conversation(self, conversation_key: str, operator_id: str) -> bool:
        """pending → active. Returns False when writes are disabled."""
        self._require_auth()
        known = self._conversations.get(conversation_key)
        if known is not None and known.status == ConversationStatus.CLOSED:
            raise ValidationError(f"Conversation {conversation_key} is closed")
        if not self._write_allowed("assignment"):
            return False

        now = utcnow()
        await self._commit([
            WriteOp(
                action=WriteAction.UPDATE,
                collection=self.config.conversations_collection,
                doc_id=conversation_key,
                data={
                    "assigned_operator_id": operator_id,
                    "status": ConversationStatus.ACTIVE.value,
                    "updated_at": now,
                },
            )
        ])
        if known is not None:
            known.assigned_operator_id = operator_id
            known.status = ConversationStatus.ACTIVE
            known.updated_at = now
        self._invalidate_conversation(conversation_key)
        return True

    async def close_conversation(self, conversation_key: str) -> bool:
        """any → closed. Returns False when writes are disabled."""
        self._require_auth()
        if not self._write_allowed("closing conversations"):
            return False

        now = utcnow()
        await self._commit([
            WriteOp(
                action=WriteAction.UPDATE,
                collection=self.config.conversations_collection,
                doc_id=conversation_key,
                data={"status": ConversationStatus.CLOSED.value, "updated_at": now},
            )
        ])
        known = self._conversations.get(conversation_key)
        if known is not None:
            known.status = ConversationStatus.CLOSED
            known.updated_at = now
        self._invalidate_conversation(conversation_key)
        return True

    # === MESSAGES ===

    def _message_from_document(self, doc_id: str, data: dict) -> UnifiedMessage:
        return self.normalizer.normalize_live_store(LiveStoreRecord(doc_id=doc_id, fields=data))

    def subscribe_messages(
        self,
        conversation_key: str,
        callback: Callable[[List[UnifiedMessage]], None],
        limit: Optional[int] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> SubscriptionHandle:
        """Recent messages of one conversation, delivered oldest first."""
        limit = limit or self.config.message_limit
        collection = self.config.messages_collection

        def build_query() -> Query:
            since = utcnow() - timedelta(hours=self.config.message_lookback_hours)
            return Query(
                collection=collection,
                filters=[
                    FieldFilter(field="conversation_key", value=conversation_key),
                    FieldFilter(field="occurred_at", op=">=", value=since),
                ],
                order_by="occurred_at",
                descending=True,
                limit=limit,
            )

        def transform(snapshot: Snapshot) -> List[UnifiedMessage]:
            messages = [self._message_from_document(d.id, d.data) for d in snapshot.docs]
            messages.reverse()
            self._threads[conversation_key] = messages
            return messages

        return self._watch(
            f"messages:{conversation_key}",
            f"messages:{conversation_key}:{limit}",
            collection,
            build_query,
            transform,
            callback,
            on_error,
        )

    async def load_more(
        self,
        conversation_key: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Page:
        """
        Older history, one page at a time. Pages are read newest first and
        returned oldest first; pass next_cursor back to continue.
        """
        limit = limit or self.config.message_limit
        if not self._read_allowed(f"history of {conversation_key}"):
            return Page(items=[], next_cursor=cursor)

        query = Query(
            collection=self.config.messages_collection,
            filters=[FieldFilter(field="conversation_key", value=conversation_key)],
            order_by="occurred_at",
            descending=True,
            limit=limit,
            start_after=cursor,
        )
        try:
            snapshot = await self.remote.query(query)
        except QuotaExceeded as e:
            logger.error("Remote store refused history read: %s", e)
            return Page(items=[], next_cursor=cursor)
        except SyncError:
            raise
        except Exception as e:
            raise TransientRemoteError(f"History read failed: {e}") from e
        self.meter.record_reads(max(1, snapshot.size))

        items = [self._message_from_document(d.id, d.data) for d in snapshot.docs]
        items.reverse()
        next_cursor = snapshot.docs[-1].id if snapshot.size == limit else None
        return Page(items=items, next_cursor=next_cursor)

    def _thread_context(self, conversation_key: str) -> Optional[UnifiedMessage]:
        """Latest customer message of a conversation from anything already in memory."""
        candidates = list(self._threads.get(conversation_key, []))
        for feed in self._feeds.values():
            candidates.extend(m for m in feed if m.conversation_key == conversation_key)
        inbound = [m for m in candidates if m.sender_role == SenderRole.CUSTOMER]
        if not inbound:
            return None
        return max(inbound, key=lambda m: m.occurred_at)

    async def send_message(
        self,
        conversation_key: str,
        text: str,
        message_type: str = "text",
    ) -> Optional[UnifiedMessage]:
        """
        Send an operator reply.

        Returns None, without touching the remote store, while the write
        budget is exhausted. Raises ValidationError before any remote call,
        AuthenticationRequired without a signed-in user and DeliveryFailed
        when the carrier refuses the message.
        """
        body = (text or "").strip()
        if not body:
            raise ValidationError("Message cannot be empty")
        if len(body) > self.config.max_message_length:
            raise ValidationError(
                f"Message is longer than {self.config.max_message_length} characters"
            )
        auth = self._require_auth()
        if not self._write_allowed("sending"):
            return None

        conversation, _known = await self._lookup_conversation(conversation_key)
        context = self._thread_context(conversation_key)
        recipient = conversation.counterparty_id if conversation else conversation_key

        delivery_id = None
        if self.transport is not None:
            try:
                delivery = await self.transport.send(recipient, body)
            except TransportError as e:
                logger.warning("Delivery to %s failed: %s", recipient, e)
                raise DeliveryFailed(recipient, str(e)) from e
            delivery_id = delivery.delivery_id

        now = utcnow()
        display_name = (
            (conversation.counterparty_name if conversation else None)
            or (context.display_name if context else None)
            or DEFAULT_NAME
        )
        message = UnifiedMessage(
            id=self.remote.new_id(),
            conversation_key=conversation_key,
            counterparty_id=recipient,
            display_name=display_name,
            subject=context.subject if context else DEFAULT_SUBJECT,
            category=context.category if context else MessageCategory.ENQUIRY,
            free_text=body,
            occurred_at=now,
            origin=Origin.LIVE_STORE,
            sender_role=SenderRole.OPERATOR,
            direction=Direction.OUTBOUND,
            intent=context.intent if context else "General",
            message_type=message_type,
        )

        document = message.to_document()
        document.update(sender_id=auth.user_id, delivery_id=delivery_id, status="sent")
        await self._commit([
            WriteOp(
                action=WriteAction.SET,
                collection=self.config.messages_collection,
                doc_id=message.id,
                data=document,
            ),
            WriteOp(
                action=WriteAction.MERGE,
                collection=self.config.conversations_collection,
                doc_id=conversation_key,
                data={
                    "counterparty_id": recipient,
                    "last_message_at": now,
                    "updated_at": now,
                    "unread_count": 0,
                },
            ),
        ])

        if conversation is not None:
            conversation.last_message_at = now
            conversation.updated_at = now
            conversation.unread_count = 0
        self._invalidate_conversation(conversation_key)
        logger.info("Sent message %s in conversation %s", message.id, conversation_key)
        return message

    async def mark_read(self, conversation_key: str, message_id: str) -> bool:
        """
        Mark one message read by the signed-in user and clear the
        conversation's unread count. Returns False when writes are disabled.
        """
        auth = self._require_auth()
        if not self._write_allowed("read receipts"):
            return False

        now = utcnow()
        await self._commit([
            WriteOp(
                action=WriteAction.UPDATE,
                collection=self.config.messages_collection,
                doc_id=message_id,
                data={
                    "status": "read",
                    "read_at": now,
                    "read_by": ArrayUnion(values=[auth.user_id]),
                },
            ),
            WriteOp(
                action=WriteAction.MERGE,
                collection=self.config.conversations_collection,
                doc_id=conversation_key,
                data={"unread_count": 0},
            ),
        ])
        known = self._conversations.get(conversation_key)
        if known is not None:
            known.unread_count = 0
        self._invalidate_conversation(conversation_key)
        return True

    async def add_reaction(self, conversation_key: str, message_id: str, emoji: str) -> bool:
        """Returns False when writes are disabled."""
        emoji = (emoji or "").strip()
        if not emoji:
            raise ValidationError("Reaction cannot be empty")
        auth = self._require_auth()
        if not self._write_allowed("reactions"):
            return False

        reaction = {"user_id": auth.user_id, "emoji": emoji, "created_at": utcnow()}
        await self._commit([
            WriteOp(
                action=WriteAction.UPDATE,
                collection=self.config.messages_collection,
                doc_id=message_id,
                data={"reactions": ArrayUnion(values=[reaction])},
            )
        ])
        self._invalidate_conversation(conversation_key)
        return True

    async def record_inbound(self, payload: dict) -> UnifiedMessage:
        """
        Ingest one webhook delivery: store it, creating the conversation for
        a new counterparty, then buffer it for the inbox.

        A delivery that failed to store, or was skipped for budget, is
        stored when the relay delivers it again.
        """
        message = self.normalizer.normalize_webhook(WebhookRecord(fields=payload))

        if not self._is_stored(message) and self._write_allowed("storing inbound messages"):
            await self._store_inbound(message)
            self._stored_inbound.update((message.id, message.dedup_key()))

        self._buffer_webhook(message)
        self._publish_inbox()
        return message

    def _is_stored(self, message: UnifiedMessage) -> bool:
        return message.id in self._stored_inbound or message.dedup_key() in self._stored_inbound

    def _buffer_webhook(self, message: UnifiedMessage) -> bool:
        """False when the same delivery is already buffered."""
        buffer = self._feeds[Origin.WEBHOOK]
        if any(m.id == message.id or m.dedup_key() == message.dedup_key() for m in buffer):
            logger.debug("Webhook message %s already buffered", message.id)
            return False
        limit = self.config.origins.limit_for(Origin.WEBHOOK)
        self._feeds[Origin.WEBHOOK] = ([message] + buffer)[:limit]
        # Only buffered deliveries are remembered as stored.
        self._stored_inbound &= {
            marker for m in self._feeds[Origin.WEBHOOK] for marker in (m.id, m.dedup_key())
        }
        return True

    async def _store_inbound(self, message: UnifiedMessage) -> None:
        key = message.conversation_key
        conversation, known = await self._lookup_conversation(key)
        now = utcnow()
        inbound = message.direction == Direction.INBOUND

        update: Dict[str, Any] = {
            "counterparty_id": message.counterparty_id,
            "last_message_at": message.occurred_at,
            "updated_at": now,
            "unread_count": Increment(amount=1) if inbound else 0,
        }
        if known and conversation is None:
            update.update(
                counterparty_name=message.display_name,
                status=ConversationStatus.PENDING.value,
                priority=Priority.MEDIUM.value,
                tags=[],
                created_at=now,
            )
            logger.info("Creating conversation %s for %s", key, message.counterparty_id)

        await self._commit([
            WriteOp(
                action=WriteAction.SET,
                collection=self.config.messages_collection,
                doc_id=message.id,
                data=message.to_document(),
            ),
            WriteOp(
                action=WriteAction.MERGE,
                collection=self.config.conversations_collection,
                doc_id=key,
                data=update,
            ),
        ])

        if conversation is None and known:
            conversation = Conversation(
                id=key,
                counterparty_id=message.counterparty_id,
                counterparty_name=message.display_name,
                last_message_at=message.occurred_at,
                created_at=now,
                updated_at=now,
            )
            self._conversations[key] = conversation
        if conversation is not None:
            conversation.last_message_at = message.occurred_at
            conversation.updated_at = now
            conversation.unread_count = conversation.unread_count + 1 if inbound else 0
        self._invalidate_conversation(key)

    async def _commit(self, ops: List[WriteOp]) -> None:
        try:
            await self.remote.batch_write(ops)
        except SyncError:
            raise
        except Exception as e:
            raise TransientRemoteError(f"Batch write failed: {e}") from e
        self.meter.record_writes(len(ops))

    def _invalidate_conversation(self, conversation_key: str) -> None:
        self.cache.invalidate_prefix(f"messages:{conversation_key}:")
        self.cache.invalidate_prefix("conversations:")

    def _require_auth(self) -> AuthContext:
        if self.auth is None:
            raise AuthenticationRequired("Sign in before making changes")
        return self.auth

    # === INBOX (multi-source aggregate) ===

    def subscribe_inbox(self, callback: Callable[[AggregateView], None]) -> SubscriptionHandle:
        """The aggregated inbox, republished whenever any feed changes."""
        listener_id = uuid4().hex[:12]
        self._inbox_listeners[listener_id] = callback

        cached = self.cache.get(INBOX_CACHE_KEY)
        if cached is not None:
            callback(cached)

        live_enabled = Origin.LIVE_STORE in self.config.origins.enabled
        if live_enabled and self._live_feed_handle is None:
            self._live_feed_handle = self._watch_live_feed()
        elif cached is None:
            # The feed is already running (or disabled) and will not replay
            # its last snapshot, so serve what is in memory.
            callback(self._cache_inbox())

        handle = SubscriptionHandle(f"inbox:{listener_id}")
        handle.bind(lambda: self._release_inbox(listener_id))
        return handle

    def _watch_live_feed(self) -> SubscriptionHandle:
        collection = self.config.feed_collection
        limit = self.config.origins.limit_for(Origin.LIVE_STORE)

        def build_query() -> Query:
            return Query(
                collection=collection,
                order_by=self.config.feed_order_field,
                descending=True,
                limit=limit,
            )

        def transform(snapshot: Snapshot) -> List[UnifiedMessage]:
            records = [LiveStoreRecord(doc_id=d.id, fields=d.data) for d in snapshot.docs]
            return self.normalizer.normalize_many(records)

        def on_feed(messages: List[UnifiedMessage]) -> None:
            self._feeds[Origin.LIVE_STORE] = list(messages)
            self._publish_inbox()

        def on_feed_error(error: SyncError) -> None:
            self._live_feed_handle = None

        return self._watch(
            LIVE_FEED_KEY,
            f"{LIVE_FEED_KEY}:{limit}",
            collection,
            build_query,
            transform,
            on_feed,
            on_feed_error,
        )

    def _release_inbox(self, listener_id: str) -> None:
        self._inbox_listeners.pop(listener_id, None)
        if not self._inbox_listeners and self._live_feed_handle is not None:
            self._live_feed_handle.cancel()
            self._live_feed_handle = None

    def inbox(self) -> AggregateView:
        """Current aggregate, computed from what is already in memory."""
        rate_limited = not self.meter.under_limit()
        feeds = {
            origin: messages
            for origin, messages in self._feeds.items()
            if not (origin == Origin.LIVE_STORE and rate_limited)
        }
        return self.aggregator.aggregate(feeds, rate_limited=rate_limited)

    def _cache_inbox(self) -> AggregateView:
        view = self.inbox()
        self.cache.set(INBOX_CACHE_KEY, view, self.config.ttl_for(self.config.feed_collection))
        return view

    def _publish_inbox(self) -> AggregateView:
        view = self._cache_inbox()
        for callback in list(self._inbox_listeners.values()):
            callback(view)
        return view

    async def refresh_sources(self) -> AggregateView:
        """Poll the spreadsheet feed, then republish the inbox."""
        if not self._read_allowed("source refresh"):
            return self._publish_inbox()

        enabled = self.config.origins.enabled
        if Origin.SPREADSHEET in enabled and self.sheet_source is not None:
            try:
                values = await self.sheet_source.fetch_values()
            except httpx.HTTPError as e:
                logger.warning("Spreadsheet poll failed: %s", e)
                self._set_state(SHEET_FEED_KEY, SubscriptionState.ERROR)
            else:
                rows = rows_from_sheet_values(values)
                self._feeds[Origin.SPREADSHEET] = self.normalizer.normalize_many(rows)
                self._set_state(SHEET_FEED_KEY, SubscriptionState.LIVE)

        return self._publish_inbox()

    # === PRESENCE ===

    def subscribe_presence(
        self,
        user_ids: Iterable[str],
        callback: Callable[[Dict[str, UserPresence]], None],
        on_error: Optional[ErrorHandler] = None,
    ) -> SubscriptionHandle:
        """Presence of the visible users only, capped to keep reads bounded."""
        limited = sorted(list(dict.fromkeys(user_ids))[: self.config.max_presence_users])
        if not limited:
            callback({})
            return SubscriptionHandle("presence:none")

        key = "presence:" + "_".join(limited)
        collection = self.config.presence_collection

        def build_query() -> Query:
            return Query(
                collection=collection,
                filters=[FieldFilter(field="user_id", op="in", value=limited)],
            )

        def transform(snapshot: Snapshot) -> Dict[str, UserPresence]:
            presence = [UserPresence.from_document(d.data) for d in snapshot.docs]
            return {p.user_id: p for p in presence}

        return self._watch(key, key, collection, build_query, transform, callback, on_error)

    async def update_presence(self, user_id: str, status: PresenceStatus) -> bool:
        if not self._write_allowed("presence updates"):
            return False
        await self._commit([
            WriteOp(
                action=WriteAction.MERGE,
                collection=self.config.presence_collection,
                doc_id=user_id,
                data={
                    "user_id": user_id,
                    "status": PresenceStatus(status).value,
                    "last_seen": utcnow(),
                    "is_typing": False,
                },
            )
        ])
        return True

    def set_typing(self, user_id: str, conversation_key: str, is_typing: bool) -> None:
        """
        Debounced per (user, conversation). Only the last call within the
        typing delay is written. Must be called from the event loop.
        """
        pair = (user_id, conversation_key)
        timer = self._typing_timers.pop(pair, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._typing_timers[pair] = loop.call_later(
            self.config.typing_debounce_seconds, self._flush_typing, pair, is_typing
        )

    def _flush_typing(self, pair: Tuple[str, str], is_typing: bool) -> None:
        self._typing_timers.pop(pair, None)
        task = asyncio.ensure_future(self._write_typing(pair, is_typing))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_typing(self, pair: Tuple[str, str], is_typing: bool) -> None:
        user_id, conversation_key = pair
        if not self._write_allowed("typing indicators"):
            return
        try:
            await self._commit([
                WriteOp(
                    action=WriteAction.MERGE,
                    collection=self.config.presence_collection,
                    doc_id=user_id,
                    data={
                        "user_id": user_id,
                        "is_typing": is_typing,
                        "typing_in_conversation": conversation_key if is_typing else None,
                    },
                )
            ])
        except SyncError as e:
            logger.warning("Typing update for %s failed: %s", user_id, e)

    # === LIFECYCLE ===

    def close(self) -> None:
        """Cancel every timer and subscription and drop cached data."""
        self.coalescer.cancel_all()
        for timer in self._typing_timers.values():
            timer.cancel()
        self._typing_timers.clear()
        for task in list(self._background):
            task.cancel()
        self._owners.clear()
        self._states.clear()
        self._inbox_listeners.clear()
        self._live_feed_handle = None
        self.cache.clear()
        logger.info("Sync orchestrator closed")
