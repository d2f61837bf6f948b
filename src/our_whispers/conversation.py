"""Deterministic conversation identifiers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives import hashes

from .encoding import to_hex
from .identity import Identity


@dataclass(frozen=True)
class ConversationId:
    """SHA-256 over the two parties' signing public keys in sorted order."""

    digest: bytes

    def hex(self) -> str:
        return to_hex(self.digest)

    def __str__(self) -> str:
        return self.hex()


def derive_conversation_id(identity_a: Any, identity_b: Any) -> ConversationId:
    """Derive the conversation id shared by two identities.

    Both parties compute the same value regardless of argument order.

    Args:
        identity_a: An Identity, or its wire dict / JSON string
        identity_b: The other party, same accepted forms

    Returns:
        The ConversationId

    Raises:
        InvalidIdentityError: If either identity is malformed
    """
    a = Identity.parse(identity_a).signing_public
    b = Identity.parse(identity_b).signing_public
    lo, hi = (a, b) if a <= b else (b, a)

    h = hashes.Hash(hashes.SHA256())
    h.update(lo)
    h.update(hi)
    digest = h.finalize()
    return ConversationId(digest=digest)
