"""Identity keys: one seed, two derived keypairs, one public Identity.

A single 32-byte seed is the root of everything a party owns. It is used
directly as the Ed25519 private seed (signing) and as the X25519 scalar
(agreement), so re-deriving from the same seed always yields the same
Identity. Only the Identity (both public keys) ever leaves the device.

Key material is read from and written to an injected ``KeyStore``; random
bytes come from an injected ``RandomSource``. Neither is global state.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)

from .constants import (
    AGREEMENT_PUBLIC_FIELD,
    MAX_IDENTITY_LENGTH,
    PRIVATE_KEY_ENTRY,
    PUBLIC_KEY_ENTRY,
    PUBLIC_KEY_SIZE,
    SEED_SIZE,
    SIGNATURE_SIZE,
    SIGNING_PUBLIC_FIELD,
)
from .encoding import canonical_json, from_hex, to_hex
from .exceptions import InvalidIdentityError, KeyDerivationError, MalformedKeyError

logger = logging.getLogger(__name__)


# =============================================================================
# Capabilities
# =============================================================================


@runtime_checkable
class RandomSource(Protocol):
    """Source of cryptographically secure random bytes.

    Every call must return exactly ``n`` bytes drawn from a CSPRNG, carrying
    the full 8*n bits of entropy. Seeds and nonces are drawn from here.
    """

    def token_bytes(self, n: int) -> bytes: ...


class SystemRandomSource:
    """RandomSource backed by the operating system CSPRNG."""

    def token_bytes(self, n: int) -> bytes:
        return secrets.token_bytes(n)


@runtime_checkable
class KeyStore(Protocol):
    """Opaque secure key-value storage (device keychain or similar)."""

    def get(self, name: str) -> str | None: ...
    def set(self, name: str, value: str) -> None: ...
    def delete(self, name: str) -> None: ...


class InMemoryKeyStore:
    """KeyStore backed by a dict. For tests and short-lived processes."""

    def __init__(self) -> None:
        self._d: dict[str, str] = {}

    def get(self, name: str) -> str | None:
        return self._d.get(name)

    def set(self, name: str, value: str) -> None:
        self._d[name] = value

    def delete(self, name: str) -> None:
        self._d.pop(name, None)


def draw_bytes(random_source: RandomSource, size: int) -> bytes:
    """Draw ``size`` random bytes, failing loudly when the source cannot deliver."""
    try:
        data = random_source.token_bytes(size)
    except Exception as e:
        raise KeyDerivationError(f"random source failed: {e.__class__.__name__}") from e
    if not isinstance(data, (bytes, bytearray)) or len(data) != size:
        raise KeyDerivationError(
            "random source returned too few bytes",
            {"expected": size, "actual": len(data) if isinstance(data, (bytes, bytearray)) else None},
        )
    return bytes(data)


# =============================================================================
# Identity (public)
# =============================================================================


@dataclass(frozen=True)
class Identity:
    """Public identity: the signing and agreement public keys.

    Canonical form is the compact JSON object
    ``{"signingPublic": "<64 hex>", "agreementPublic": "<64 hex>"}``
    with lowercase hex and that field order.
    """

    signing_public: bytes
    agreement_public: bytes

    def __post_init__(self) -> None:
        for name in ("signing_public", "agreement_public"):
            value = getattr(self, name)
            if not isinstance(value, (bytes, bytearray)) or len(value) != PUBLIC_KEY_SIZE:
                raise InvalidIdentityError(f"{name} must be {PUBLIC_KEY_SIZE} bytes")

    def to_dict(self) -> dict[str, str]:
        """Convert to the canonical wire dictionary."""
        return {
            SIGNING_PUBLIC_FIELD: to_hex(self.signing_public),
            AGREEMENT_PUBLIC_FIELD: to_hex(self.agreement_public),
        }

    def canonical(self) -> bytes:
        """Canonical bytes used for hashing, signing and comparison."""
        return canonical_json(self.to_dict())

    def to_json(self) -> str:
        return self.canonical().decode("utf-8")

    def fingerprint(self) -> str:
        """Short, non-secret label for logs."""
        return to_hex(self.signing_public)[:16]

    @classmethod
    def from_dict(cls, data: Any) -> Identity:
        """Create from a wire dictionary.

        Tolerates a ``0x`` prefix and uppercase hex; both are normalized away.
        """
        if not isinstance(data, dict):
            raise InvalidIdentityError("identity must be an object")
        missing = [f for f in (SIGNING_PUBLIC_FIELD, AGREEMENT_PUBLIC_FIELD) if f not in data]
        if missing:
            raise InvalidIdentityError(f"identity missing field(s): {', '.join(missing)}")
        return cls(
            signing_public=from_hex(
                data[SIGNING_PUBLIC_FIELD],
                field=SIGNING_PUBLIC_FIELD,
                size=PUBLIC_KEY_SIZE,
                allow_prefix=True,
                error=InvalidIdentityError,
            ),
            agreement_public=from_hex(
                data[AGREEMENT_PUBLIC_FIELD],
                field=AGREEMENT_PUBLIC_FIELD,
                size=PUBLIC_KEY_SIZE,
                allow_prefix=True,
                error=InvalidIdentityError,
            ),
        )

    @classmethod
    def from_json(cls, text: str) -> Identity:
        if not isinstance(text, str) or len(text) > MAX_IDENTITY_LENGTH:
            raise InvalidIdentityError("identity JSON missing or too long")
        try:
            data = json.loads(text)
        except ValueError as e:
            raise InvalidIdentityError("identity is not valid JSON") from e
        return cls.from_dict(data)

    @classmethod
    def parse(cls, value: Any) -> Identity:
        """Accept an Identity, its wire dict, or its JSON string."""
        if isinstance(value, Identity):
            return value
        if isinstance(value, str):
            return cls.from_json(value)
        return cls.from_dict(value)


# =============================================================================
# Secret material
# =============================================================================


def _raw_private(key: Ed25519PrivateKey | X25519PrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _raw_public(key: Ed25519PublicKey | X25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


@dataclass(frozen=True, repr=False)
class SecretMaterial:
    """Seed plus both private keys. Never transmitted, never logged."""

    seed: bytes
    signing_private: bytes
    agreement_private: bytes

    def __repr__(self) -> str:
        return "SecretMaterial(<redacted>)"

    def signing_key(self) -> Ed25519PrivateKey:
        return Ed25519PrivateKey.from_private_bytes(self.signing_private)

    def agreement_key(self) -> X25519PrivateKey:
        return X25519PrivateKey.from_private_bytes(self.agreement_private)

    def identity(self) -> Identity:
        """The public Identity for this material."""
        return Identity(
            signing_public=_raw_public(self.signing_key().public_key()),
            agreement_public=_raw_public(self.agreement_key().public_key()),
        )

    def to_json(self) -> str:
        """Serialize for the key store."""
        return json.dumps(
            {
                "seed": to_hex(self.seed),
                "signingPrivate": to_hex(self.signing_private),
                "agreementPrivate": to_hex(self.agreement_private),
            }
        )

    @classmethod
    def from_json(cls, text: str) -> SecretMaterial:
        """Parse stored material, rejecting anything that does not re-derive from its seed."""
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            raise MalformedKeyError("stored secret material is not valid JSON") from e
        if not isinstance(data, dict):
            raise MalformedKeyError("stored secret material is not an object")

        fields = {}
        for name in ("seed", "signingPrivate", "agreementPrivate"):
            fields[name] = from_hex(data.get(name), field=name, size=SEED_SIZE, error=MalformedKeyError)

        _, derived = derive_from_seed(fields["seed"])
        if (
            derived.signing_private != fields["signingPrivate"]
            or derived.agreement_private != fields["agreementPrivate"]
        ):
            raise MalformedKeyError("stored private keys do not match their seed")
        return derived


# =============================================================================
# Derivation and primitives
# =============================================================================


def derive_from_seed(seed: bytes) -> tuple[Identity, SecretMaterial]:
    """Deterministically derive both keypairs from a 32-byte seed.

    Args:
        seed: The identity seed

    Returns:
        Tuple of (Identity, SecretMaterial)
    """
    if not isinstance(seed, (bytes, bytearray)) or len(seed) != SEED_SIZE:
        raise KeyDerivationError(f"seed must be {SEED_SIZE} bytes")
    seed = bytes(seed)

    signing_key = Ed25519PrivateKey.from_private_bytes(seed)
    agreement_key = X25519PrivateKey.from_private_bytes(seed)

    secret = SecretMaterial(
        seed=seed,
        signing_private=_raw_private(signing_key),
        agreement_private=_raw_private(agreement_key),
    )
    identity = Identity(
        signing_public=_raw_public(signing_key.public_key()),
        agreement_public=_raw_public(agreement_key.public_key()),
    )
    return identity, secret


def generate(random_source: RandomSource | None = None) -> tuple[Identity, SecretMaterial]:
    """Draw a fresh seed and derive a new identity from it."""
    seed = draw_bytes(random_source or SystemRandomSource(), SEED_SIZE)
    return derive_from_seed(seed)


def sign(secret: SecretMaterial, data: bytes) -> bytes:
    """Ed25519 signature over ``data`` with the signing private key."""
    return secret.signing_key().sign(data)


def verify_signature(signing_public: bytes, data: bytes, signature: bytes) -> bool:
    """Check an Ed25519 signature. Malformed keys or signatures verify as False."""
    if len(signature) != SIGNATURE_SIZE:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(signing_public).verify(signature, data)
        return True
    except (InvalidSignature, ValueError):
        return False


def agree(secret: SecretMaterial, peer_agreement_public: bytes) -> bytes:
    """X25519 shared secret between our agreement key and a peer's public key."""
    try:
        peer = X25519PublicKey.from_public_bytes(peer_agreement_public)
    except ValueError as e:
        raise InvalidIdentityError("peer agreement key is not a valid X25519 public key") from e
    try:
        return secret.agreement_key().exchange(peer)
    except ValueError as e:
        # All-zero output: the peer sent a low-order point
        raise KeyDerivationError("key agreement produced a degenerate shared secret") from e


# =============================================================================
# Key lifecycle
# =============================================================================


class IdentityKeys:
    """Loads, creates and replaces this device's identity in a KeyStore."""

    def __init__(self, key_store: KeyStore, random_source: RandomSource | None = None) -> None:
        self.key_store = key_store
        self.random_source = random_source or SystemRandomSource()

    def load(self) -> tuple[Identity, SecretMaterial] | None:
        """Load the stored identity.

        Returns:
            Tuple of (Identity, SecretMaterial), or None if nothing is stored

        Raises:
            MalformedKeyError: If stored material is corrupted. Whether to
                regenerate or abort is the caller's decision.
        """
        private_json = self.key_store.get(PRIVATE_KEY_ENTRY)
        if private_json is None:
            return None
        secret = SecretMaterial.from_json(private_json)
        identity = secret.identity()

        public_json = self.key_store.get(PUBLIC_KEY_ENTRY)
        if public_json is not None:
            try:
                stored = Identity.from_json(public_json)
            except InvalidIdentityError as e:
                raise MalformedKeyError("stored public identity is corrupted") from e
            if stored != identity:
                raise MalformedKeyError("stored public identity does not match secret material")
        return identity, secret

    def load_or_create(self) -> tuple[Identity, SecretMaterial]:
        """Return the stored identity, creating one on first use."""
        loaded = self.load()
        if loaded is not None:
            return loaded
        return self.regenerate()

    def regenerate(self) -> tuple[Identity, SecretMaterial]:
        """Replace the stored identity with a freshly generated one.

        Conversations derived from the old Identity become unreachable.
        """
        identity, secret = generate(self.random_source)
        self.key_store.set(PUBLIC_KEY_ENTRY, identity.to_json())
        self.key_store.set(PRIVATE_KEY_ENTRY, secret.to_json())
        logger.info(f"Generated identity {identity.fingerprint()}")
        return identity, secret

    def clear(self) -> None:
        """Delete all stored key material."""
        self.key_store.delete(PUBLIC_KEY_ENTRY)
        self.key_store.delete(PRIVATE_KEY_ENTRY)
        logger.info("Cleared identity key material")
