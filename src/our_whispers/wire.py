"""Relay wire types and their strict decoders.

Decoding produces typed values or raises ``MalformedRequestError``; code
downstream of these decoders does not re-check formats.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .cipher import EncryptedEnvelope
from .constants import MAX_DELIVERY_TOKEN_LENGTH, MAX_TIMESTAMP_MS, SIGNATURE_SIZE
from .encoding import from_hex, to_hex
from .exceptions import MalformedRequestError
from .identity import Identity

RELAY_REQUEST_FIELDS = ("origin", "destination", "encryptedMessage", "timestamp", "signature")


def decode_timestamp(value: Any) -> int:
    """A positive int64 millisecond timestamp."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise MalformedRequestError("timestamp must be an integer", {"field": "timestamp"})
    if value <= 0 or value > MAX_TIMESTAMP_MS:
        raise MalformedRequestError("timestamp out of range", {"field": "timestamp"})
    return value


@dataclass(frozen=True)
class RelayRequest:
    """A signed request asking the relay to deliver one envelope."""

    origin: Identity
    destination: Identity
    envelope: EncryptedEnvelope
    timestamp: int
    signature: bytes

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON body posted to the relay."""
        return {
            "origin": self.origin.to_dict(),
            "destination": self.destination.to_dict(),
            "encryptedMessage": self.envelope.to_json(),
            "timestamp": self.timestamp,
            "signature": to_hex(self.signature),
        }

    @classmethod
    def from_dict(cls, data: Any) -> RelayRequest:
        """Decode a relay request body.

        Identities may be objects or JSON strings; ``encryptedMessage`` is a
        JSON string holding the envelope.
        """
        if not isinstance(data, dict):
            raise MalformedRequestError("request body must be an object")
        missing = [f for f in RELAY_REQUEST_FIELDS if data.get(f) in (None, "")]
        if missing:
            raise MalformedRequestError(
                f"Missing required fields: {', '.join(missing)}",
                {"missing": missing},
            )
        return cls(
            origin=Identity.parse(data["origin"]),
            destination=Identity.parse(data["destination"]),
            envelope=EncryptedEnvelope.from_json(data["encryptedMessage"]),
            timestamp=decode_timestamp(data["timestamp"]),
            signature=from_hex(data["signature"], field="signature", size=SIGNATURE_SIZE),
        )


@dataclass(frozen=True)
class Registration:
    """A request to map an Identity to a push delivery token."""

    identity: Identity
    delivery_token: str

    @classmethod
    def from_dict(cls, data: Any) -> Registration:
        """Decode a registration body.

        ``expoPushToken`` is accepted as an alias of ``deliveryToken``.
        """
        if not isinstance(data, dict):
            raise MalformedRequestError("request body must be an object")
        raw_identity = data.get("recipientId")
        token = data.get("deliveryToken", data.get("expoPushToken"))
        if not raw_identity or not token:
            raise MalformedRequestError("Missing required fields: recipientId, deliveryToken")
        if not isinstance(token, str) or len(token) > MAX_DELIVERY_TOKEN_LENGTH:
            raise MalformedRequestError("deliveryToken must be a short string", {"field": "deliveryToken"})
        return cls(identity=Identity.parse(raw_identity), delivery_token=token)
