"""Relay gateway: verify, authorize, look up and forward.

Each relay request goes through, in order:

1. Shape validation      -> MalformedRequestError
2. Timestamp window      -> ExpiredOrFutureTimestampError
3. Signature             -> AuthenticationError
4. Directory lookup      -> RecipientNotFoundError
5. Forward to delivery   -> DeliveryError (surfaced, never retried here)

The gateway keeps no state between requests. Shared state lives in the
RecipientDirectory.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from starlette.concurrency import run_in_threadpool

from .clock import Clock, system_clock
from .constants import DEFAULT_TIMESTAMP_TOLERANCE_MS
from .delivery import DeliveryReceipt, DeliveryService, Notification
from .directory import RecipientDirectory
from .exceptions import MalformedRequestError, RecipientNotFoundError
from .identity import Identity
from .request_auth import ReplayCache, RequestAuthenticator
from .wire import Registration, RelayRequest

logger = logging.getLogger(__name__)


def _shorten(value: str, head: int = 8, tail: int = 8) -> str:
    if len(value) <= head + tail:
        return value
    return f"{value[:head]}...{value[-tail:] if tail else ''}"


def _sanitize_identity(value: Any) -> Any:
    try:
        data = json.loads(value) if isinstance(value, str) else value
        return {k: _shorten(str(v)) for k, v in data.items()}
    except (ValueError, AttributeError, TypeError):
        return "[invalid-format]"


def sanitize_for_log(body: Any) -> Any:
    """Shorten keys, tokens and signatures and drop ciphertext from a request body."""
    if not isinstance(body, dict):
        return "[invalid-format]"
    sanitized = dict(body)

    for name in ("recipientId", "destination", "origin"):
        if sanitized.get(name):
            sanitized[name] = _sanitize_identity(sanitized[name])

    for name in ("deliveryToken", "expoPushToken"):
        token = sanitized.get(name)
        if token:
            sanitized[name] = _shorten(str(token), 20, 10) if len(str(token)) > 30 else "[token]"

    if sanitized.get("encryptedMessage"):
        try:
            msg = json.loads(sanitized["encryptedMessage"])
            sanitized["encryptedMessage"] = {
                "ciphertext": f"[{len(msg.get('ciphertext', ''))} chars]",
                "nonce": _shorten(str(msg.get("nonce", "")), 8, 0),
                "signature": _shorten(str(msg.get("signature", "")), 8, 0),
            }
        except (ValueError, AttributeError, TypeError):
            sanitized["encryptedMessage"] = "[invalid-format]"

    if sanitized.get("signature"):
        sanitized["signature"] = _shorten(str(sanitized["signature"]))

    if "key" in sanitized:
        sanitized["key"] = "[redacted]"
    return sanitized


class RelayGateway:
    """Server-side orchestrator for registration, sending and cleanup."""

    def __init__(
        self,
        directory: RecipientDirectory,
        delivery: DeliveryService,
        tolerance_ms: int = DEFAULT_TIMESTAMP_TOLERANCE_MS,
        clock: Clock | None = None,
        replay_cache: ReplayCache | None = None,
    ) -> None:
        self.directory = directory
        self.delivery = delivery
        self.authenticator = RequestAuthenticator(
            tolerance_ms=tolerance_ms,
            clock=clock or system_clock,
            replay_cache=replay_cache,
        )

    def register(self, body: Any) -> Identity:
        """Create or refresh a registration.

        Args:
            body: Registration body with ``recipientId`` and ``deliveryToken``

        Returns:
            The registered Identity
        """
        logger.info(f"Register request: {sanitize_for_log(body)}")
        registration = Registration.from_dict(body)
        if not self.delivery.accepts_token(registration.delivery_token):
            raise MalformedRequestError("Invalid delivery token format", {"field": "deliveryToken"})

        self.directory.upsert(registration.identity, registration.delivery_token)
        logger.info(f"Registered recipient {registration.identity.fingerprint()}")
        return registration.identity

    async def send(self, body: Any) -> DeliveryReceipt:
        """Verify a relay request and forward its envelope.

        Args:
            body: The relay request body

        Returns:
            The delivery receipt from the push service
        """
        logger.info(f"Send request: {sanitize_for_log(body)}")
        request = RelayRequest.from_dict(body)
        self.authenticator.verify(request)

        record = await run_in_threadpool(self.directory.lookup, request.destination)
        if record is None:
            logger.warning(f"Recipient not found: {request.destination.fingerprint()}")
            raise RecipientNotFoundError("Recipient not found")

        notification = Notification(
            token=record.delivery_token,
            origin=request.origin,
            destination=request.destination,
            envelope=request.envelope,
        )
        receipt = await self.delivery.deliver(notification)
        logger.info(
            f"Forwarded message {request.origin.fingerprint()} -> {request.destination.fingerprint()}"
            f" (ticket {receipt.ticket_id})"
        )
        return receipt

    def cleanup(self, max_age: timedelta) -> int:
        """Evict registrations not refreshed within ``max_age``."""
        removed = self.directory.evict_stale(max_age)
        logger.info(f"Cleanup removed {removed} stale registration(s)")
        return removed
