"""Expo push gateway client.

Only the gateway's HTTP contract is implemented here:

    send:     POST [message, ...]        -> {"data": [ticket, ...]}
    receipts: POST {"ids": [id, ...]}    -> {"data": {id: receipt, ...}}

Both requests are capped at 100 entries. Callers are responsible for batching.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import httpx

from ..config import settings

logger = logging.getLogger(__name__)

# Gateway's documented per-request cap
BATCH_SIZE = 100

# Ticket / receipt error codes
DEVICE_NOT_REGISTERED = "DeviceNotRegistered"
INVALID_CREDENTIALS = "InvalidCredentials"
MESSAGE_TOO_BIG = "MessageTooBig"
MESSAGE_RATE_EXCEEDED = "MessageRateExceeded"


class PushGatewayError(Exception):
    """The gateway was unreachable or answered with something unusable."""


@dataclass
class PushMessage:
    """One message in a send request."""
    to: str
    title: str
    body: str
    data: Optional[Dict[str, Any]] = None
    sound: Optional[str] = "default"
    badge: Optional[int] = None
    channel_id: Optional[str] = None
    priority: Optional[str] = None
    ttl: Optional[int] = None
    expiration: Optional[int] = None

    def to_payload(self) -> dict:
        """Serialize using the gateway's field names, omitting unset fields."""
        payload = {"to": self.to, "title": self.title, "body": self.body}
        optional = {
            "data": self.data,
            "sound": self.sound,
            "badge": self.badge,
            "channelId": self.channel_id,
            "priority": self.priority,
            "ttl": self.ttl,
            "expiration": self.expiration,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload


@dataclass
class PushTicket:
    """Synchronous per-message acknowledgement."""
    status: str
    id: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def error(self) -> Optional[str]:
        return self.details.get("error")

    @classmethod
    def from_dict(cls, raw: Any) -> "PushTicket":
        if not isinstance(raw, dict) or raw.get("status") not in ("ok", "error"):
            raise PushGatewayError(f"Malformed ticket: {raw!r}")
        return cls(
            status=raw["status"],
            id=raw.get("id"),
            message=raw.get("message"),
            details=raw.get("details") or {},
        )


@dataclass
class PushReceipt:
    """Delayed delivery outcome for a ticket id."""
    status: str
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def error(self) -> Optional[str]:
        return self.details.get("error")


class ExpoPushClient:
    """HTTP client for the Expo push API."""

    def __init__(
        self,
        push_url: Optional[str] = None,
        receipts_url: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.push_url = push_url or settings.expo_push_url
        self.receipts_url = receipts_url or settings.expo_receipts_url
        self.access_token = access_token if access_token is not None else settings.expo_access_token
        self.timeout = timeout or settings.push_request_timeout
        self._transport = transport

    def _headers(self) -> dict:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _post(self, url: str, payload: Any) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise PushGatewayError(f"Network error: {e}") from e

        if response.status_code >= 400:
            raise PushGatewayError(f"Expo API returned {response.status_code}: {response.text}")

        try:
            body = response.json()
        except ValueError as e:
            raise PushGatewayError("Expo API returned invalid JSON") from e

        if not isinstance(body, dict) or "data" not in body:
            raise PushGatewayError(f"Expo API response missing 'data': {body!r}")
        return body["data"]

    async def send_batch(self, messages: List[PushMessage]) -> List[PushTicket]:
        """Send up to BATCH_SIZE messages, returning tickets aligned with the input."""
        if len(messages) > BATCH_SIZE:
            raise ValueError(f"At most {BATCH_SIZE} messages per request")

        data = await self._post(self.push_url, [m.to_payload() for m in messages])

        if not isinstance(data, list) or len(data) != len(messages):
            raise PushGatewayError(
                f"Expected {len(messages)} tickets, got "
                f"{len(data) if isinstance(data, list) else type(data).__name__}"
            )
        return [PushTicket.from_dict(raw) for raw in data]

    async def get_receipts(self, receipt_ids: List[str]) -> Dict[str, PushReceipt]:
        """Fetch receipts for up to BATCH_SIZE ids. Ids not yet available are simply absent."""
        if len(receipt_ids) > BATCH_SIZE:
            raise ValueError(f"At most {BATCH_SIZE} receipt ids per request")

        data = await self._post(self.receipts_url, {"ids": receipt_ids})
        if not isinstance(data, dict):
            raise PushGatewayError(f"Malformed receipts payload: {data!r}")

        receipts = {}
        for receipt_id, raw in data.items():
            if not isinstance(raw, dict) or "status" not in raw:
                logger.warning(f"Ignoring malformed receipt {receipt_id}")
                continue
            receipts[receipt_id] = PushReceipt(
                status=raw["status"],
                message=raw.get("message"),
                details=raw.get("details") or {},
            )
        return receipts
