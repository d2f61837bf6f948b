"""Push notification delivery.

The relay hands each verified envelope to a ``DeliveryService``. The
envelope stays opaque: the notification only carries the two identities
and the hex envelope fields so the recipient app can decrypt it.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import aiohttp

from .cipher import EncryptedEnvelope
from .config import EXPO_PUSH_URL
from .constants import NOTIFICATION_BODY, NOTIFICATION_TITLE
from .exceptions import DeliveryError
from .identity import Identity

logger = logging.getLogger(__name__)

_EXPO_TOKEN_RE = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[[^\]]+\]$")
_EXPO_UUID_TOKEN_RE = re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE)


def is_expo_push_token(token: Any) -> bool:
    """Check the two token shapes Expo issues."""
    return isinstance(token, str) and bool(_EXPO_TOKEN_RE.match(token) or _EXPO_UUID_TOKEN_RE.match(token))


@dataclass(frozen=True)
class Notification:
    """One envelope addressed to one delivery token."""

    token: str
    origin: Identity
    destination: Identity
    envelope: EncryptedEnvelope

    def data(self) -> dict[str, Any]:
        """Notification data as the recipient app receives it."""
        return {
            "origin": self.origin.to_json(),
            "destination": self.destination.to_json(),
            "encryptedMessage": self.envelope.to_dict(),
        }


@dataclass
class DeliveryReceipt:
    """Outcome reported by the push service."""

    status: str
    ticket_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "id": self.ticket_id, "details": self.details}


@runtime_checkable
class DeliveryService(Protocol):
    """External push delivery collaborator."""

    def accepts_token(self, token: str) -> bool: ...
    async def deliver(self, notification: Notification) -> DeliveryReceipt: ...


class ExpoPushDelivery:
    """Delivers notifications through the Expo push API."""

    def __init__(
        self,
        push_url: str = EXPO_PUSH_URL,
        access_token: str | None = None,
        timeout_seconds: float = 10.0,
        sound: str | None = "default",
    ) -> None:
        self.push_url = push_url
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.sound = sound

    def accepts_token(self, token: str) -> bool:
        return is_expo_push_token(token)

    def build_message(self, notification: Notification) -> dict[str, Any]:
        message: dict[str, Any] = {
            "to": notification.token,
            "title": NOTIFICATION_TITLE,
            "body": NOTIFICATION_BODY,
            "data": notification.data(),
        }
        if self.sound:
            message["sound"] = self.sound
        return message

    async def deliver(self, notification: Notification) -> DeliveryReceipt:
        """Send one notification and return Expo's push ticket.

        Raises:
            DeliveryError: On transport failure, HTTP error or an error ticket
        """
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)) as session:
                async with session.post(
                    self.push_url,
                    json=[self.build_message(notification)],
                    headers=headers,
                ) as response:
                    if response.status >= 400:
                        text = await response.text()
                        raise DeliveryError(
                            f"push service returned HTTP {response.status}",
                            {"status": response.status, "body": text[:200]},
                        )
                    try:
                        body = await response.json(content_type=None)
                    except ValueError as e:
                        logger.warning(f"Push service returned a non-JSON body (HTTP {response.status})")
                        raise DeliveryError("push service returned invalid JSON", {"status": response.status}) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Push delivery transport failure: {e.__class__.__name__}")
            raise DeliveryError(f"push service unreachable: {e.__class__.__name__}") from e

        tickets = body.get("data") if isinstance(body, dict) else None
        if isinstance(tickets, list):
            ticket = tickets[0] if tickets else {}
        else:
            ticket = tickets or {}
        if not isinstance(ticket, dict) or ticket.get("status") != "ok":
            details = ticket.get("details", {}) if isinstance(ticket, dict) else {}
            message = ticket.get("message", "push ticket not ok") if isinstance(ticket, dict) else "bad ticket"
            raise DeliveryError(message, {"ticket": details})

        return DeliveryReceipt(status="ok", ticket_id=ticket.get("id"), details=ticket.get("details", {}))
