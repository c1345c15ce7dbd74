"""
Outbound transport: delivers operator replies to the customer's carrier.

The orchestrator only sees OutboundTransport. GraphApiTransport talks to the
WhatsApp Cloud API; RecordingTransport keeps deliveries in memory.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


class TransportError(Exception):
    """The carrier rejected the message or could not be reached."""
    pass


class Delivery(BaseModel):
    delivery_id: str
    recipient_id: str


def format_recipient(phone: str, default_country_code: str = "1") -> str:
    """Digits only; 10-digit local numbers get the default country code."""
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) == 10 and not digits.startswith(default_country_code):
        digits = default_country_code + digits
    return digits


class OutboundTransport(ABC):
    @abstractmethod
    async def send(self, recipient_id: str, text: str) -> Delivery:
        """Deliver `text`. Raises TransportError on failure."""


class RecordingTransport(OutboundTransport):
    """Accepts every message and remembers it."""

    def __init__(self, fail_with: Optional[str] = None):
        self.sent: List[dict] = []
        self.fail_with = fail_with

    async def send(self, recipient_id: str, text: str) -> Delivery:
        if self.fail_with:
            raise TransportError(self.fail_with)
        delivery = Delivery(
            delivery_id=f"rec_{len(self.sent) + 1}",
            recipient_id=format_recipient(recipient_id),
        )
        self.sent.append({"to": delivery.recipient_id, "text": text, "id": delivery.delivery_id})
        return delivery


class GraphApiTransport(OutboundTransport):
    """WhatsApp Cloud API text messages."""

    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        base_url: str = "https://graph.facebook.com/v21.0",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.phone_number_id = phone_number_id
        self._access_token = access_token
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    async def send(self, recipient_id: str, text: str) -> Delivery:
        recipient = format_recipient(recipient_id)
        payload = {
            "messaging_product": "whatsapp",
            "to": recipient,
            "type": "text",
            "text": {"body": text},
        }
        headers = {"Authorization": f"Bearer {self._access_token}"}
        url = f"{self.base_url}/{self.phone_number_id}/messages"

        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"Carrier unreachable: {e}") from e

        if resp.status_code >= 400:
            try:
                detail = resp.json().get("error", {}).get("message", "Unknown error")
            except ValueError:
                detail = "Unknown error"
            raise TransportError(f"Carrier API error {resp.status_code}: {detail}")

        messages = resp.json().get("messages") or []
        if not messages or not messages[0].get("id"):
            raise TransportError("Carrier response carried no message id")

        logger.info("Delivered message %s", messages[0]["id"])
        return Delivery(delivery_id=messages[0]["id"], recipient_id=recipient)
