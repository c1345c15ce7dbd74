"""
Aggregator: one deduplicated, newest-first, bounded view over every feed.

Dedup is a content heuristic: messages from different origins with the same
(counterparty_id, free_text, subject) are taken to be one message, and the
primary origin's copy is kept. Two messages from the same origin never merge.

Truncation happens after sorting, so the window always drops the oldest
messages.
"""

import logging
from collections import Counter
from typing import Dict, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel

from sync_kernel.models.config import OriginsConfig
from sync_kernel.models.message import MessageCategory, Origin, UnifiedMessage

logger = logging.getLogger(__name__)


class AggregateView(BaseModel):
    """The inbox as the UI sees it. Counts are derived on every call."""

    messages: List[UnifiedMessage] = []     # Newest first
    merged_duplicates: int = 0
    truncated: int = 0                      # Messages dropped by the window
    rate_limited: bool = False              # Live-store feed withheld for budget

    def __len__(self) -> int:
        return len(self.messages)

    def category_counts(self) -> Dict[MessageCategory, int]:
        counts = Counter(m.category for m in self.messages)
        return {category: counts.get(category, 0) for category in MessageCategory}

    def origin_counts(self) -> Dict[Origin, int]:
        return dict(Counter(m.origin for m in self.messages))

    def by_category(self, category: MessageCategory) -> List[UnifiedMessage]:
        return [m for m in self.messages if m.category == category]

    def new_orders(self) -> List[UnifiedMessage]:
        return self.by_category(MessageCategory.NEW_ORDER)

    def thread(self, counterparty_id: str) -> List[UnifiedMessage]:
        """All messages with one customer, oldest first."""
        matching = [m for m in self.messages if m.counterparty_id == counterparty_id]
        return sorted(matching, key=lambda m: m.occurred_at)


class _Slot:
    """One logical message and the origins whose copies were folded into it."""

    __slots__ = ("message", "sequence", "origins")

    def __init__(self, message: UnifiedMessage, sequence: Tuple[int, int]):
        self.message = message
        self.sequence = sequence
        self.origins: Set[Origin] = {message.origin}


class Aggregator:
    """Combines normalized feeds according to the configured origins."""

    def __init__(self, origins: Optional[OriginsConfig] = None, window_size: int = 100):
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.origins = origins or OriginsConfig()
        self.window_size = window_size

    def aggregate(
        self,
        feeds: Dict[Origin, Sequence[UnifiedMessage]],
        rate_limited: bool = False,
    ) -> AggregateView:
        enabled = self.origins.enabled
        position = {origin: index for index, origin in enumerate(enabled)}

        # The primary feed claims content first so its copy survives dedup.
        claim_order = [self.origins.primary] + [o for o in enabled if o != self.origins.primary]

        slots: List[_Slot] = []
        by_key: Dict[tuple, List[_Slot]] = {}
        merged = 0

        for origin in claim_order:
            # Per-feed caps also keep the newest, never an arbitrary subset.
            feed = sorted(feeds.get(origin, ()), key=lambda m: -m.occurred_at.timestamp())
            feed = feed[: self.origins.limit_for(origin)]
            for index, message in enumerate(feed):
                key = message.dedup_key()
                candidates = by_key.setdefault(key, [])
                target = next((s for s in candidates if origin not in s.origins), None)
                if target is not None:
                    target.origins.add(origin)
                    merged += 1
                    continue
                slot = _Slot(message, (position[origin], index))
                candidates.append(slot)
                slots.append(slot)

        ignored = [o.value for o in feeds if o not in position and feeds[o]]
        if ignored:
            logger.debug("Ignoring feeds from disabled origins: %s", ignored)

        slots.sort(key=lambda s: (-s.message.occurred_at.timestamp(), s.sequence))
        kept = slots[: self.window_size]

        return AggregateView(
            messages=[s.message for s in kept],
            merged_duplicates=merged,
            truncated=len(slots) - len(kept),
            rate_limited=rate_limited,
        )
