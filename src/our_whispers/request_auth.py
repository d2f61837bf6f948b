"""Relay request authentication.

The origin signs the exact byte concatenation

    str(timestamp) || canonical(destination) || canonical(envelope)

with no separators. The relay rebuilds the same bytes, checks the timestamp
is within the tolerance window and verifies the signature against the
origin's signing public key.

Replay: the timestamp window is the only defense the protocol defines. A
captured request stays valid until it ages out of the window. A
``ReplayCache`` can be plugged into verification to reject repeats inside
the window; none is used unless one is configured.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol, runtime_checkable

from .cipher import EncryptedEnvelope
from .clock import Clock, system_clock
from .constants import DEFAULT_TIMESTAMP_TOLERANCE_MS
from .encoding import to_hex
from .exceptions import (
    AuthenticationError,
    ExpiredOrFutureTimestampError,
    ReplayedRequestError,
)
from .identity import Identity, SecretMaterial, sign, verify_signature
from .wire import RelayRequest

logger = logging.getLogger(__name__)


# =============================================================================
# Client side
# =============================================================================


def signing_input(timestamp: int, destination: Identity, envelope: EncryptedEnvelope) -> bytes:
    """The exact bytes covered by a relay request signature."""
    return str(int(timestamp)).encode("ascii") + destination.canonical() + envelope.canonical()


def sign_request(
    secret: SecretMaterial,
    timestamp: int,
    destination: Identity,
    envelope: EncryptedEnvelope,
) -> bytes:
    """Sign a relay request with the origin's signing key."""
    return sign(secret, signing_input(timestamp, destination, envelope))


def compose_relay_request(
    secret: SecretMaterial,
    origin: Identity,
    destination: Identity,
    envelope: EncryptedEnvelope,
    clock: Clock | None = None,
) -> RelayRequest:
    """Stamp and sign an envelope for the relay."""
    timestamp = (clock or system_clock)()
    return RelayRequest(
        origin=origin,
        destination=destination,
        envelope=envelope,
        timestamp=timestamp,
        signature=sign_request(secret, timestamp, destination, envelope),
    )


# =============================================================================
# Replay cache (extension point)
# =============================================================================


@runtime_checkable
class ReplayCache(Protocol):
    """Remembers request signatures until their timestamp window closes."""

    def check_and_add(self, key: str, expires_at_ms: int, now_ms: int) -> bool:
        """Record ``key``; return True if it was already present and unexpired."""
        ...


class InMemoryReplayCache:
    """Process-local replay cache with expiry sweep on each insert."""

    def __init__(self) -> None:
        self._seen: dict[str, int] = {}
        self._lock = threading.Lock()

    def _gc(self, now_ms: int) -> None:
        dead = [k for k, exp in self._seen.items() if exp < now_ms]
        for k in dead:
            del self._seen[k]

    def check_and_add(self, key: str, expires_at_ms: int, now_ms: int) -> bool:
        with self._lock:
            self._gc(now_ms)
            if key in self._seen:
                return True
            self._seen[key] = expires_at_ms
            return False

    def __len__(self) -> int:
        return len(self._seen)


# =============================================================================
# Server side
# =============================================================================


def check_timestamp(timestamp: int, now_ms: int, tolerance_ms: int = DEFAULT_TIMESTAMP_TOLERANCE_MS) -> None:
    """Reject timestamps more than ``tolerance_ms`` away from ``now_ms``."""
    skew = abs(now_ms - timestamp)
    if skew > tolerance_ms:
        raise ExpiredOrFutureTimestampError(
            "request timestamp outside tolerance window",
            {"skew_ms": skew, "tolerance_ms": tolerance_ms},
        )


def verify_request(
    request: RelayRequest,
    now_ms: int | None = None,
    tolerance_ms: int = DEFAULT_TIMESTAMP_TOLERANCE_MS,
    replay_cache: ReplayCache | None = None,
) -> None:
    """Check a decoded relay request's timestamp window and signature.

    Raises:
        ExpiredOrFutureTimestampError: Timestamp outside the window
        AuthenticationError: Signature does not verify under the origin's key
        ReplayedRequestError: A configured replay cache has seen this request
    """
    now = system_clock() if now_ms is None else now_ms
    check_timestamp(request.timestamp, now, tolerance_ms)

    data = signing_input(request.timestamp, request.destination, request.envelope)
    if not verify_signature(request.origin.signing_public, data, request.signature):
        logger.warning(f"Request signature invalid for origin {request.origin.fingerprint()}")
        raise AuthenticationError("request signature does not verify")

    if replay_cache is not None:
        expires_at = request.timestamp + tolerance_ms
        if replay_cache.check_and_add(to_hex(request.signature), expires_at, now):
            logger.warning(f"Replayed request from origin {request.origin.fingerprint()}")
            raise ReplayedRequestError("request already processed")


class RequestAuthenticator:
    """Server-side verifier bound to a clock, tolerance and optional replay cache."""

    def __init__(
        self,
        tolerance_ms: int = DEFAULT_TIMESTAMP_TOLERANCE_MS,
        clock: Clock | None = None,
        replay_cache: ReplayCache | None = None,
    ) -> None:
        self.tolerance_ms = tolerance_ms
        self.clock = clock or system_clock
        self.replay_cache = replay_cache

    def verify(self, request: RelayRequest) -> None:
        verify_request(
            request,
            now_ms=self.clock(),
            tolerance_ms=self.tolerance_ms,
            replay_cache=self.replay_cache,
        )
