"""Subscription lifecycle state."""

from enum import Enum


class SubscriptionState(str, Enum):
    """
    Per logical key:
      IDLE → PENDING → LIVE, any → ERROR, LIVE → PENDING on re-ensure.
    """
    IDLE = "idle"
    PENDING = "pending"     # Waiting for the settle delay or the first snapshot
    LIVE = "live"
    ERROR = "error"         # Remote failure. Needs a fresh subscribe call.
