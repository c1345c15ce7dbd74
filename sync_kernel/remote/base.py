"""
Remote collection interface consumed by the orchestrator.

The kernel treats the store as opaque: filtered/ordered/limited queries,
push subscriptions delivering whole snapshots, and atomic batched writes.
No wire protocol is assumed.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, List, Optional

from pydantic import BaseModel


class FieldFilter(BaseModel):
    field: str
    op: str = "=="                          # "==" | "!=" | ">=" | "<=" | ">" | "<" | "in"
    value: Any = None


class Query(BaseModel):
    collection: str
    filters: List[FieldFilter] = []
    order_by: Optional[str] = None
    descending: bool = True
    limit: Optional[int] = None
    start_after: Optional[str] = None       # Document id cursor


class Document(BaseModel):
    id: str
    data: dict = {}


class Snapshot(BaseModel):
    docs: List[Document] = []

    @property
    def size(self) -> int:
        return len(self.docs)


class Increment(BaseModel):
    """Write value that atomically adds to a numeric field."""

    amount: int = 1


class ArrayUnion(BaseModel):
    """Write value that appends the given items to an array field, skipping ones already present."""

    values: List[Any] = []


class WriteAction(str, Enum):
    SET = "set"         # Replace the document
    MERGE = "merge"     # Create or merge fields into the document
    UPDATE = "update"   # Merge fields. Fails the batch if the document is missing.


class WriteOp(BaseModel):
    action: WriteAction
    collection: str
    doc_id: str
    data: dict = {}


SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[Exception], None]


class RemoteCollection(ABC):
    """The metered document store."""

    @abstractmethod
    def new_id(self) -> str:
        """Allocate a document id without writing anything."""

    @abstractmethod
    async def query(self, query: Query) -> Snapshot:
        """One-shot read. Billed one read per returned document."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Read a single document. Billed one read."""

    @abstractmethod
    def subscribe(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Callable[[], None]:
        """Push subscription. Returns a cancel function."""

    @abstractmethod
    async def batch_write(self, ops: List[WriteOp]) -> None:
        """Apply every op or none of them."""
