"""
Raw feed records.

Each origin delivers its own shape. The normalizer has one function per
record kind; fields are never assumed to mean the same thing across kinds
beyond the synonym tables declared there.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel


class LiveStoreRecord(BaseModel):
    """A document pushed by the live store, field names as stored."""

    kind: Literal["live_store"] = "live_store"
    doc_id: Optional[str] = None
    fields: Dict[str, Any] = {}


class WebhookRecord(BaseModel):
    """A JSON object delivered to the inbound webhook."""

    kind: Literal["webhook"] = "webhook"
    fields: Dict[str, Any] = {}


class SheetRow(BaseModel):
    """
    A spreadsheet row. Columns are positional:
    phone, name, Product, Category, Intent, Message, timestamp.
    """

    kind: Literal["spreadsheet"] = "spreadsheet"
    cells: List[str] = []
    row_index: int = 0                      # Position below the header row


RawRecord = Union[LiveStoreRecord, WebhookRecord, SheetRow]
