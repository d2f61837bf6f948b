"""Message cipher: X25519 agreement + ChaCha20-Poly1305 + Ed25519 signature.

Envelope layout
    ciphertext  ChaCha20-Poly1305 output (payload + 16-byte tag)
    nonce       12 random bytes, fresh per message
    signature   sender's Ed25519 signature over the raw ciphertext bytes

The nonce is also fed to the AEAD as associated data, on both sides, so any
change to it fails the tag check. The signature lets a recipient reject a
forged envelope before doing any key agreement or decryption.

Plaintext payload (JSON)
    {"senderIdentity": <Identity>, "message": "<text>", "timestamp": <ms>}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .clock import Clock, system_clock
from .constants import (
    MAX_ENCRYPTED_MESSAGE_LENGTH,
    MAX_MESSAGE_LENGTH,
    NONCE_SIZE,
    SIGNATURE_SIZE,
    TAG_SIZE,
)
from .encoding import canonical_json, from_hex, to_hex
from .exceptions import (
    EncryptionError,
    IntegrityError,
    InvalidIdentityError,
    KeyDerivationError,
    MalformedRequestError,
    SignatureInvalid,
)
from .identity import (
    Identity,
    RandomSource,
    SecretMaterial,
    SystemRandomSource,
    agree,
    draw_bytes,
    sign,
    verify_signature,
)

logger = logging.getLogger(__name__)

# Canonical envelope JSON length minus the ciphertext hex
ENVELOPE_JSON_OVERHEAD = len(
    canonical_json({"ciphertext": "", "nonce": "00" * NONCE_SIZE, "signature": "00" * SIGNATURE_SIZE})
)


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Ciphertext, nonce and sender signature for one message."""

    ciphertext: bytes
    nonce: bytes
    signature: bytes

    def to_dict(self) -> dict[str, str]:
        """Convert to the canonical wire dictionary."""
        return {
            "ciphertext": to_hex(self.ciphertext),
            "nonce": to_hex(self.nonce),
            "signature": to_hex(self.signature),
        }

    def canonical(self) -> bytes:
        """Canonical bytes, as signed by the relay request."""
        return canonical_json(self.to_dict())

    def to_json(self) -> str:
        return self.canonical().decode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> EncryptedEnvelope:
        """Create from a wire dictionary, enforcing field sizes."""
        if not isinstance(data, dict):
            raise MalformedRequestError("encrypted message must be an object")
        missing = [f for f in ("ciphertext", "nonce", "signature") if f not in data]
        if missing:
            raise MalformedRequestError(f"encrypted message missing field(s): {', '.join(missing)}")
        ciphertext = from_hex(data["ciphertext"], field="ciphertext")
        if len(ciphertext) <= TAG_SIZE:
            raise MalformedRequestError("ciphertext shorter than the authentication tag")
        return cls(
            ciphertext=ciphertext,
            nonce=from_hex(data["nonce"], field="nonce", size=NONCE_SIZE),
            signature=from_hex(data["signature"], field="signature", size=SIGNATURE_SIZE),
        )

    @classmethod
    def from_json(cls, text: Any) -> EncryptedEnvelope:
        if not isinstance(text, str) or len(text) > MAX_ENCRYPTED_MESSAGE_LENGTH:
            raise MalformedRequestError("encryptedMessage missing or too long")
        try:
            data = json.loads(text)
        except ValueError as e:
            raise MalformedRequestError("encryptedMessage is not valid JSON") from e
        return cls.from_dict(data)


@dataclass(frozen=True)
class DecryptedMessage:
    """A verified, decrypted message."""

    sender_identity: Identity
    message: str
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "senderIdentity": self.sender_identity.to_dict(),
            "message": self.message,
            "timestamp": self.timestamp,
        }


def encrypt(
    sender_secret: SecretMaterial,
    sender_identity: Identity,
    recipient_identity: Identity,
    plaintext: str,
    clock: Clock | None = None,
    random_source: RandomSource | None = None,
) -> EncryptedEnvelope:
    """Encrypt and sign a message for one recipient.

    Args:
        sender_secret: Sender's secret material
        sender_identity: Sender's public Identity, embedded in the payload
        recipient_identity: Recipient's public Identity
        plaintext: Message text
        clock: Millisecond clock for the payload timestamp
        random_source: Source for the per-message nonce

    Returns:
        The EncryptedEnvelope

    Raises:
        EncryptionError: On an invalid message or any cipher fault
    """
    if not isinstance(plaintext, str) or len(plaintext) > MAX_MESSAGE_LENGTH:
        raise EncryptionError(f"message must be a string of at most {MAX_MESSAGE_LENGTH} characters")

    payload = {
        "senderIdentity": sender_identity.to_dict(),
        "message": plaintext,
        "timestamp": (clock or system_clock)(),
    }

    try:
        shared_secret = agree(sender_secret, recipient_identity.agreement_public)
        nonce = draw_bytes(random_source or SystemRandomSource(), NONCE_SIZE)
        ciphertext = ChaCha20Poly1305(shared_secret).encrypt(nonce, canonical_json(payload), nonce)
    except (KeyDerivationError, InvalidIdentityError) as e:
        raise EncryptionError(f"encryption failed: {e.message}") from e
    except Exception as e:
        raise EncryptionError(f"cipher fault: {e.__class__.__name__}") from e

    # Signature and nonce are fixed size, so the hex ciphertext decides whether the relay accepts it
    envelope_length = 2 * len(ciphertext) + ENVELOPE_JSON_OVERHEAD
    if envelope_length > MAX_ENCRYPTED_MESSAGE_LENGTH:
        raise EncryptionError(
            "encoded message too large for the relay",
            {"envelope_length": envelope_length, "max_length": MAX_ENCRYPTED_MESSAGE_LENGTH},
        )

    signature = sign(sender_secret, ciphertext)
    return EncryptedEnvelope(ciphertext=ciphertext, nonce=nonce, signature=signature)


def decrypt(
    recipient_secret: SecretMaterial,
    origin_identity: Identity,
    envelope: EncryptedEnvelope,
) -> DecryptedMessage:
    """Verify and decrypt an envelope from ``origin_identity``.

    Raises:
        SignatureInvalid: Signature does not cover this ciphertext; nothing is decrypted
        IntegrityError: AEAD tag mismatch, unreadable payload, or a payload
            claiming a sender other than ``origin_identity``
    """
    if not verify_signature(origin_identity.signing_public, envelope.ciphertext, envelope.signature):
        logger.warning(f"Envelope signature invalid for origin {origin_identity.fingerprint()}")
        raise SignatureInvalid("envelope signature does not verify")

    try:
        shared_secret = agree(recipient_secret, origin_identity.agreement_public)
    except KeyDerivationError as e:
        raise IntegrityError("key agreement with origin failed") from e

    try:
        payload_bytes = ChaCha20Poly1305(shared_secret).decrypt(envelope.nonce, envelope.ciphertext, envelope.nonce)
    except (InvalidTag, ValueError) as e:
        logger.warning(f"Envelope failed authentication for origin {origin_identity.fingerprint()}")
        raise IntegrityError("ciphertext failed authentication") from e

    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
        sender = Identity.from_dict(payload["senderIdentity"])
        message = payload["message"]
        timestamp = payload["timestamp"]
    except (ValueError, KeyError, TypeError, InvalidIdentityError) as e:
        raise IntegrityError("decrypted payload is malformed") from e

    if not isinstance(message, str) or not isinstance(timestamp, int) or isinstance(timestamp, bool):
        raise IntegrityError("decrypted payload has wrong field types")
    if sender != origin_identity:
        raise IntegrityError("payload sender does not match envelope origin")

    return DecryptedMessage(sender_identity=sender, message=message, timestamp=timestamp)
