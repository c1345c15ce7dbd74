"""
Sync Kernel API: FastAPI endpoints.

Exposes the orchestrator to the dashboard and to the webhook relay:
- Usage budget inspection
- The aggregated inbox
- Inbound webhook ingestion
- Operator replies and conversation history
- Conversation assignment and closing
- Read receipts and reactions
- Presence updates
"""

from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from sync_kernel.aggregation.aggregator import AggregateView
from sync_kernel.errors import (
    AuthenticationRequired,
    DeliveryFailed,
    QuotaExceeded,
    SyncError,
    TransientRemoteError,
    ValidationError,
)
from sync_kernel.models.config import SyncConfig
from sync_kernel.models.conversation import AuthContext, PresenceStatus, UserRole
from sync_kernel.orchestrator.sync import SyncOrchestrator
from sync_kernel.remote.memory import InMemoryRemoteCollection
from sync_kernel.remote.transport import RecordingTransport


# --- Request/Response Models ---

class SessionRequest(BaseModel):
    user_id: str
    role: UserRole = UserRole.OPERATOR


class SendRequest(BaseModel):
    text: str
    message_type: str = "text"


class AssignRequest(BaseModel):
    operator_id: str


class ReactionRequest(BaseModel):
    emoji: str


class PresenceRequest(BaseModel):
    status: PresenceStatus


STATUS_BY_ERROR = {
    ValidationError: 422,
    AuthenticationRequired: 401,
    QuotaExceeded: 429,
    DeliveryFailed: 502,
    TransientRemoteError: 503,
}


def _http_error(exc: SyncError) -> HTTPException:
    for error_type, status in STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return HTTPException(status, str(exc))
    return HTTPException(500, str(exc))


def _view_payload(view: AggregateView) -> dict:
    return {
        "messages": [m.model_dump(mode="json") for m in view.messages],
        "category_counts": {c.value: n for c, n in view.category_counts().items()},
        "origin_counts": {o.value: n for o, n in view.origin_counts().items()},
        "merged_duplicates": view.merged_duplicates,
        "truncated": view.truncated,
        "rate_limited": view.rate_limited,
    }


# --- Application Factory ---

def create_app(
    orchestrator: Optional[SyncOrchestrator] = None,
    config: Optional[SyncConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Sync Kernel API",
        description="Budgeted real-time sync for the operator inbox",
        version="0.1.0",
    )

    sync = orchestrator or SyncOrchestrator(
        remote=InMemoryRemoteCollection(),
        transport=RecordingTransport(),
        config=config,
    )

    # Store components on app state for access in endpoints
    app.state.orchestrator = sync

    # === SESSION ===

    @app.post("/session")
    def sign_in(req: SessionRequest):
        """Sign an operator in; writes are rejected until this is done."""
        sync.auth = AuthContext(user_id=req.user_id, role=req.role)
        return sync.auth.model_dump(mode="json")

    @app.delete("/session")
    def sign_out():
        sync.auth = None
        return {"status": "signed_out"}

    # === USAGE ===

    @app.get("/usage")
    def get_usage():
        """Read/write counters for the current window."""
        stats = sync.usage()
        return {
            **stats.model_dump(mode="json"),
            "level": sync.usage_level().value,
            "read_ceiling": sync.config.quota.read_ceiling,
            "write_ceiling": sync.config.quota.write_ceiling,
            "writes_disabled": sync.writes_disabled,
        }

    # === INBOX ===

    @app.get("/inbox")
    def get_inbox():
        """The aggregated inbox across every enabled origin."""
        return _view_payload(sync.inbox())

    @app.post("/sources/refresh")
    async def refresh_sources():
        """Re-poll the polled feeds and return the refreshed inbox."""
        try:
            view = await sync.refresh_sources()
        except SyncError as e:
            raise _http_error(e)
        return _view_payload(view)

    @app.post("/webhook/messages")
    async def receive_webhook(payload: dict):
        """Inbound message relayed by the messaging webhook."""
        try:
            message = await sync.record_inbound(payload)
        except SyncError as e:
            raise _http_error(e)
        return message.model_dump(mode="json")

    # === CONVERSATIONS ===

    @app.post("/conversations/{conversation_key}/messages")
    async def send_message(conversation_key: str, req: SendRequest):
        """Operator reply."""
        try:
            message = await sync.send_message(conversation_key, req.text, req.message_type)
        except SyncError as e:
            raise _http_error(e)
        if message is None:
            raise HTTPException(429, "Write budget exhausted; sending is temporarily disabled")
        return message.model_dump(mode="json")

    @app.get("/conversations/{conversation_key}/messages")
    async def get_history(conversation_key: str, cursor: Optional[str] = None, limit: Optional[int] = None):
        """One page of history, oldest first."""
        try:
            page = await sync.load_more(conversation_key, cursor=cursor, limit=limit)
        except SyncError as e:
            raise _http_error(e)
        return page.model_dump(mode="json")

    @app.post("/conversations/{conversation_key}/assign")
    async def assign_conversation(conversation_key: str, req: AssignRequest):
        try:
            done = await sync.assign_conversation(conversation_key, req.operator_id)
        except SyncError as e:
            raise _http_error(e)
        if not done:
            raise HTTPException(429, "Write budget exhausted")
        return {"status": "assigned", "conversation_key": conversation_key, "operator_id": req.operator_id}

    @app.post("/conversations/{conversation_key}/close")
    async def close_conversation(conversation_key: str):
        try:
            done = await sync.close_conversation(conversation_key)
        except SyncError as e:
            raise _http_error(e)
        if not done:
            raise HTTPException(429, "Write budget exhausted")
        return {"status": "closed", "conversation_key": conversation_key}

    @app.post("/conversations/{conversation_key}/messages/{message_id}/read")
    async def mark_read(conversation_key: str, message_id: str):
        try:
            done = await sync.mark_read(conversation_key, message_id)
        except SyncError as e:
            raise _http_error(e)
        if not done:
            raise HTTPException(429, "Write budget exhausted")
        return {"status": "read", "conversation_key": conversation_key, "message_id": message_id}

    @app.post("/conversations/{conversation_key}/messages/{message_id}/reactions")
    async def add_reaction(conversation_key: str, message_id: str, req: ReactionRequest):
        try:
            done = await sync.add_reaction(conversation_key, message_id, req.emoji)
        except SyncError as e:
            raise _http_error(e)
        if not done:
            raise HTTPException(429, "Write budget exhausted")
        return {"status": "reacted", "message_id": message_id, "emoji": req.emoji}

    # === PRESENCE ===

    @app.post("/presence/{user_id}")
    async def update_presence(user_id: str, req: PresenceRequest):
        try:
            done = await sync.update_presence(user_id, req.status)
        except SyncError as e:
            raise _http_error(e)
        if not done:
            raise HTTPException(429, "Write budget exhausted")
        return {"status": req.status.value, "user_id": user_id}

    return app
