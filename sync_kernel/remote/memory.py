"""
In-memory remote collection.

Backs the demo API and the tests. Snapshots are delivered through the
running event loop, never synchronously, so a cancelled subscription can
still receive a snapshot that was already in flight, as with a real push
channel.
"""

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sync_kernel.errors import QuotaExceeded, TransientRemoteError
from sync_kernel.remote.base import (
    ArrayUnion,
    Document,
    ErrorCallback,
    FieldFilter,
    Increment,
    Query,
    RemoteCollection,
    Snapshot,
    SnapshotCallback,
    WriteAction,
    WriteOp,
)

logger = logging.getLogger(__name__)


def _matches(data: dict, flt: FieldFilter) -> bool:
    value = data.get(flt.field)
    if flt.op == "in":
        return value in (flt.value or [])
    if flt.op == "==":
        return value == flt.value
    if flt.op == "!=":
        return value != flt.value
    if value is None:
        return False
    try:
        if flt.op == ">=":
            return value >= flt.value
        if flt.op == "<=":
            return value <= flt.value
        if flt.op == ">":
            return value > flt.value
        if flt.op == "<":
            return value < flt.value
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator: {flt.op}")


def _sort_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.timestamp()
    return value


class _Listener:
    def __init__(self, query: Query, on_snapshot: SnapshotCallback, on_error: Optional[ErrorCallback]):
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True


class InMemoryRemoteCollection(RemoteCollection):
    """
    Dict-backed store with push subscriptions.

    `max_reads` simulates the provider's own quota: once exhausted, reads
    raise QuotaExceeded. `fail_next` makes the next operation raise.
    """

    def __init__(self, max_reads: Optional[int] = None):
        self._collections: Dict[str, Dict[str, dict]] = {}
        self._listeners: List[_Listener] = []
        self.max_reads = max_reads
        self.reads_served = 0
        self.writes_applied = 0
        self.fail_next: Optional[Exception] = None

    # --- Seeding / inspection ---

    def seed(self, collection: str, doc_id: str, data: dict) -> None:
        """Insert a document without billing or notifying anyone."""
        self._collections.setdefault(collection, {})[doc_id] = dict(data)

    def document(self, collection: str, doc_id: str) -> Optional[dict]:
        data = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))

    @property
    def listener_count(self) -> int:
        return sum(1 for listener in self._listeners if listener.active)

    # --- RemoteCollection ---

    def new_id(self) -> str:
        return uuid4().hex[:20]

    def _raise_injected(self) -> None:
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    def _bill(self, count: int) -> None:
        if self.max_reads is not None and self.reads_served + count > self.max_reads:
            raise QuotaExceeded("Remote read quota exhausted")
        self.reads_served += count

    def _run(self, query: Query) -> Snapshot:
        docs = [
            Document(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._collections.get(query.collection, {}).items()
            if all(_matches(data, flt) for flt in query.filters)
        ]
        if query.order_by:
            field = query.order_by
            present = [d for d in docs if d.data.get(field) is not None]
            missing = [d for d in docs if d.data.get(field) is None]
            present.sort(key=lambda d: _sort_value(d.data[field]), reverse=query.descending)
            docs = present + missing
        if query.start_after is not None:
            ids = [d.id for d in docs]
            if query.start_after in ids:
                docs = docs[ids.index(query.start_after) + 1:]
        if query.limit is not None:
            docs = docs[: query.limit]
        return Snapshot(docs=docs)

    async def query(self, query: Query) -> Snapshot:
        self._raise_injected()
        snapshot = self._run(query)
        self._bill(max(1, snapshot.size))
        return snapshot

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        self._raise_injected()
        self._bill(1)
        data = self._collections.get(collection, {}).get(doc_id)
        if data is None:
            return None
        return Document(id=doc_id, data=copy.deepcopy(data))

    def subscribe(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Callable[[], None]:
        self._raise_injected()
        listener = _Listener(query, on_snapshot, on_error)
        self._listeners.append(listener)
        self._schedule(listener)

        def cancel() -> None:
            listener.active = False
            if listener in self._listeners:
                self._listeners.remove(listener)

        return cancel

    async def batch_write(self, ops: List[WriteOp]) -> None:
        self._raise_injected()
        staged = copy.deepcopy(self._collections)
        for op in ops:
            docs = staged.setdefault(op.collection, {})
            current = docs.get(op.doc_id)
            if op.action == WriteAction.UPDATE and current is None:
                raise TransientRemoteError(f"No document to update: {op.collection}/{op.doc_id}")
            if op.action == WriteAction.SET or current is None:
                base: dict = {}
            else:
                base = current
            for field, value in op.data.items():
                if isinstance(value, Increment):
                    value = (base.get(field) or 0) + value.amount
                elif isinstance(value, ArrayUnion):
                    existing = list(base.get(field) or [])
                    value = existing + [v for v in value.values if v not in existing]
                base[field] = value
            docs[op.doc_id] = base

        self._collections = staged
        self.writes_applied += len(ops)

        touched = {op.collection for op in ops}
        for listener in list(self._listeners):
            if listener.query.collection in touched:
                self._schedule(listener)

    def push_error(self, collection: str, exc: Exception) -> None:
        """Fail every listener on `collection`, as a dropped channel would."""
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            if listener.query.collection == collection and listener.on_error is not None:
                loop.call_soon(listener.on_error, exc)

    def _schedule(self, listener: _Listener) -> None:
        loop = asyncio.get_running_loop()
        loop.call_soon(self._deliver, listener)

    def _deliver(self, listener: _Listener) -> None:
        try:
            snapshot = self._run(listener.query)
            self._bill(snapshot.size)
        except QuotaExceeded as exc:
            if listener.on_error is not None:
                listener.on_error(exc)
            return
        listener.on_snapshot(snapshot)
