"""Relay client: register for delivery, send encrypted messages, open notifications."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from . import exceptions
from .cipher import DecryptedMessage, EncryptedEnvelope, decrypt, encrypt
from .clock import Clock
from .exceptions import IntegrityError, MalformedRequestError, WhispersError
from .identity import Identity, RandomSource, SecretMaterial
from .request_auth import compose_relay_request
from .wire import RelayRequest

logger = logging.getLogger(__name__)


def _error_from_response(status: int, body: Any) -> WhispersError:
    """Rebuild the relay's named error from its JSON error body."""
    name = body.get("error") if isinstance(body, dict) else None
    message = body.get("message", f"relay returned HTTP {status}") if isinstance(body, dict) else f"HTTP {status}"
    cls = getattr(exceptions, name, None) if isinstance(name, str) else None
    if not (isinstance(cls, type) and issubclass(cls, WhispersError)):
        cls = WhispersError
    return cls(message, {"status": status})


class RelayClient:
    """Talks to one relay on behalf of one identity."""

    def __init__(
        self,
        base_url: str,
        identity: Identity,
        secret: SecretMaterial,
        timeout_seconds: float = 10.0,
        clock: Clock | None = None,
        random_source: RandomSource | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.identity = identity
        self.secret = secret
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.random_source = random_source

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)) as session:
                async with session.request(method, url, json=payload) as response:
                    body = await response.json(content_type=None)
                    if response.status >= 400:
                        raise _error_from_response(response.status, body)
                    return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Relay {path} unreachable: {e.__class__.__name__}")
            raise WhispersError(f"relay unreachable: {e.__class__.__name__}") from e

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    async def register(self, delivery_token: str) -> dict[str, Any]:
        """Register (or refresh) this identity's push delivery token."""
        return await self._request(
            "POST",
            "/register",
            {"recipientId": self.identity.to_dict(), "deliveryToken": delivery_token},
        )

    def prepare(self, recipient: Identity, text: str) -> RelayRequest:
        """Encrypt ``text`` for ``recipient`` and wrap it in a signed relay request."""
        envelope = encrypt(
            self.secret,
            self.identity,
            recipient,
            text,
            clock=self.clock,
            random_source=self.random_source,
        )
        return compose_relay_request(self.secret, self.identity, recipient, envelope, clock=self.clock)

    async def send_message(self, recipient: Identity, text: str) -> dict[str, Any]:
        """Encrypt, sign and relay one message.

        Raises:
            RecipientNotFoundError: Recipient never registered with the relay
            AuthenticationError: Relay rejected the signature or timestamp
        """
        request = self.prepare(recipient, text)
        return await self._request("POST", "/send", request.to_dict())


def open_notification(
    secret: SecretMaterial,
    data: dict[str, Any],
    expected_destination: Identity | None = None,
) -> DecryptedMessage:
    """Decode delivered notification data and decrypt its envelope.

    Args:
        secret: Recipient's secret material
        data: Notification data with ``origin``, ``destination``, ``encryptedMessage``
        expected_destination: If given, reject notifications addressed elsewhere
    """
    if not isinstance(data, dict) or "origin" not in data or "encryptedMessage" not in data:
        raise MalformedRequestError("notification data missing origin or encryptedMessage")

    origin = Identity.parse(data["origin"])
    raw_envelope = data["encryptedMessage"]
    if isinstance(raw_envelope, str):
        envelope = EncryptedEnvelope.from_json(raw_envelope)
    else:
        envelope = EncryptedEnvelope.from_dict(raw_envelope)

    if expected_destination is not None:
        if data.get("destination") is None or Identity.parse(data["destination"]) != expected_destination:
            raise IntegrityError("notification addressed to another identity")

    return decrypt(secret, origin, envelope)
