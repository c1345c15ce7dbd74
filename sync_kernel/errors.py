"""
Error taxonomy for the sync kernel.

Schema fallbacks and late snapshots from superseded subscriptions are not
errors: the normalizer resolves the first with defaults and the orchestrator
discards the second. Both are logged instead of raised.
"""


class SyncError(Exception):
    """Base class for every error the kernel surfaces."""
    pass


class TransientRemoteError(SyncError):
    """Network or timeout failure talking to the remote store. Never retried here."""
    pass


class QuotaExceeded(SyncError):
    """The usage budget for the current window is spent."""
    pass


class ValidationError(SyncError):
    """An outbound message was rejected before any remote call."""
    pass


class AuthenticationRequired(SyncError):
    """An authenticated write was attempted without a signed-in user."""
    pass


class DeliveryFailed(SyncError):
    """The outbound transport refused or failed to deliver a message."""

    def __init__(self, recipient_id: str, reason: str):
        super().__init__(f"Delivery to {recipient_id} failed: {reason}")
        self.recipient_id = recipient_id
        self.reason = reason
