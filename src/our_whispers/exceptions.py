"""Whispers exception hierarchy."""

from __future__ import annotations

from typing import Any


class WhispersError(Exception):
    """Base exception for all whispers errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Key material
# =============================================================================


class KeyDerivationError(WhispersError):
    """Key material could not be derived (no entropy, bad seed, degenerate agreement)."""

    pass


class MalformedKeyError(WhispersError):
    """Stored secret material cannot be parsed."""

    pass


# =============================================================================
# Input shape
# =============================================================================


class MalformedRequestError(WhispersError):
    """A request is missing fields, oversized or wrongly encoded."""

    pass


class InvalidIdentityError(MalformedRequestError):
    """An Identity is not two 32-byte hex public keys."""

    pass


# =============================================================================
# Message cipher
# =============================================================================


class EncryptionError(WhispersError):
    """The cipher failed to produce a ciphertext."""

    pass


class SignatureInvalid(WhispersError):
    """Envelope signature does not verify under the origin's signing key."""

    pass


class IntegrityError(WhispersError):
    """AEAD tag mismatch or a decrypted payload that does not hold together."""

    pass


# =============================================================================
# Relay
# =============================================================================


class AuthenticationError(WhispersError):
    """Relay request signature does not verify."""

    pass


class ExpiredOrFutureTimestampError(AuthenticationError):
    """Relay request timestamp is outside the tolerance window."""

    pass


class ReplayedRequestError(AuthenticationError):
    """Relay request was already seen inside the tolerance window."""

    pass


class RecipientNotFoundError(WhispersError):
    """Destination has no delivery registration."""

    pass


class DeliveryError(WhispersError):
    """The push delivery layer rejected or failed the notification."""

    pass
