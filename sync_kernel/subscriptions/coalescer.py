"""
Subscription Coalescer: one push subscription per logical key.

Rapid UI navigation can ask for a new subscription on the same key faster
than the push channel settles. ensure() is a debounce with cancellation:

  1. a pending (not yet materialized) timer for the key is cancelled,
  2. a materialized subscription for the key is torn down,
  3. the factory runs after the settle delay and its handle becomes the
     live subscription for the key.

Step 2 happens before anything new is scheduled, so a subscription that is
about to be replaced can never interleave updates with its successor. Data
already in flight from a torn-down handle is recognised with is_current().
"""

import asyncio
import logging
from typing import Callable, Dict, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class SubscriptionHandle:
    """
    Cancellation capability bound to a logical key.

    cancel() is idempotent. The handle is also callable, so it can be handed
    out wherever an unsubscribe function is expected.
    """

    def __init__(self, key: str, cancel: Optional[Unsubscribe] = None):
        self.key = key
        self.id = uuid4().hex[:12]
        self._cancel = cancel
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def bind(self, cancel: Unsubscribe) -> None:
        """Attach the cancel function of the underlying remote subscription."""
        if self._cancelled:
            cancel()
            return
        self._cancel = cancel

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._cancel is not None:
            self._cancel()
            self._cancel = None

    __call__ = cancel

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"<SubscriptionHandle {self.key} {self.id} {state}>"


SubscriptionFactory = Callable[[SubscriptionHandle], Unsubscribe]
ErrorCallback = Callable[[str, Exception], None]


class SubscriptionCoalescer:
    """Owns the pending timers and live handles of every logical key."""

    def __init__(self):
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._handles: Dict[str, SubscriptionHandle] = {}

    def ensure(
        self,
        key: str,
        factory: SubscriptionFactory,
        settle_delay: float,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        """
        Replace whatever is watching `key` with the subscription `factory`
        opens after `settle_delay` seconds. Must be called from the event loop.
        """
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
            logger.debug("Coalesced pending subscription for %s", key)

        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()
            logger.debug("Tore down live subscription %s", handle)

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(
            max(0.0, settle_delay), self._materialize, key, factory, on_error
        )

    def _materialize(
        self,
        key: str,
        factory: SubscriptionFactory,
        on_error: Optional[ErrorCallback],
    ) -> None:
        self._timers.pop(key, None)
        handle = SubscriptionHandle(key)
        self._handles[key] = handle
        try:
            handle.bind(factory(handle))
        except Exception as exc:
            self._handles.pop(key, None)
            handle.cancel()
            logger.warning("Subscription factory for %s failed: %s", key, exc)
            if on_error is None:
                raise
            on_error(key, exc)
            return
        logger.debug("Materialized subscription %s", handle)

    def cancel(self, key: str) -> None:
        """Clear both the pending timer and the live handle for `key`."""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for key in list(self._timers) + list(self._handles):
            self.cancel(key)

    def is_current(self, key: str, handle: SubscriptionHandle) -> bool:
        """True while `handle` is the live subscription registered for `key`."""
        return handle.active and self._handles.get(key) is handle

    def is_pending(self, key: str) -> bool:
        return key in self._timers

    def is_live(self, key: str) -> bool:
        return key in self._handles

    def handle_for(self, key: str) -> Optional[SubscriptionHandle]:
        return self._handles.get(key)

    @property
    def keys(self) -> set:
        return set(self._timers) | set(self._handles)
