"""Spreadsheet feed: rows polled from a sheet's values range."""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx

logger = logging.getLogger(__name__)


class SheetSource(ABC):
    @abstractmethod
    async def fetch_values(self) -> List[List[str]]:
        """The raw values grid, header row included."""


class StaticSheetSource(SheetSource):
    """A fixed grid, for tests and demos."""

    def __init__(self, values: Optional[List[List[str]]] = None):
        self.values = values or []
        self.fetches = 0

    async def fetch_values(self) -> List[List[str]]:
        self.fetches += 1
        return [list(row) for row in self.values]


class SheetsApiSource(SheetSource):
    """Google Sheets REST values endpoint, authenticated with an API key."""

    def __init__(
        self,
        spreadsheet_id: str,
        api_key: str,
        sheet_name: str = "Customer Details",
        cell_range: str = "A:H",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.spreadsheet_id = spreadsheet_id
        self._api_key = api_key
        self.sheet_name = sheet_name
        self.cell_range = cell_range
        self._client = client
        self._timeout = timeout

    @property
    def url(self) -> str:
        return (
            f"https://sheets.googleapis.com/v4/spreadsheets/{self.spreadsheet_id}"
            f"/values/{self.sheet_name}!{self.cell_range}"
        )

    async def fetch_values(self) -> List[List[str]]:
        params = {"key": self._api_key}
        if self._client is not None:
            resp = await self._client.get(self.url, params=params)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(self.url, params=params)
        resp.raise_for_status()
        values = resp.json().get("values") or []
        logger.debug("Fetched %d spreadsheet rows", max(0, len(values) - 1))
        return values
