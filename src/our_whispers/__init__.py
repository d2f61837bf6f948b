"""End-to-end encrypted short messages relayed through push notifications.

Key concepts:
- Identity: a party's Ed25519 signing key and X25519 agreement key, both
  derived from one secret seed
- ConversationId: symmetric hash of two parties' signing keys
- EncryptedEnvelope: ChaCha20-Poly1305 ciphertext, nonce and sender signature
- RelayRequest: envelope plus a timestamp-bound request signature that the
  relay verifies before forwarding

Security properties:
- Confidentiality and integrity: only the two parties can read or alter a message
- Sender authenticity: envelopes and relay requests are signed
- Bounded replay: relay requests expire after the timestamp tolerance window
"""

# Constants
from .constants import (
    DEFAULT_TIMESTAMP_TOLERANCE_MS,
    MAX_MESSAGE_LENGTH,
    NONCE_SIZE,
    PUBLIC_KEY_SIZE,
    SEED_SIZE,
    SIGNATURE_SIZE,
)

# Exceptions
from .exceptions import (
    AuthenticationError,
    DeliveryError,
    EncryptionError,
    ExpiredOrFutureTimestampError,
    IntegrityError,
    InvalidIdentityError,
    KeyDerivationError,
    MalformedKeyError,
    MalformedRequestError,
    RecipientNotFoundError,
    ReplayedRequestError,
    SignatureInvalid,
    WhispersError,
)

# Identity
from .identity import (
    Identity,
    IdentityKeys,
    InMemoryKeyStore,
    KeyStore,
    RandomSource,
    SecretMaterial,
    SystemRandomSource,
    agree,
    derive_from_seed,
    generate,
    sign,
    verify_signature,
)

# Conversation and cipher
from .conversation import ConversationId, derive_conversation_id
from .cipher import DecryptedMessage, EncryptedEnvelope, decrypt, encrypt

# Relay protocol
from .wire import Registration, RelayRequest
from .request_auth import (
    InMemoryReplayCache,
    ReplayCache,
    RequestAuthenticator,
    compose_relay_request,
    sign_request,
    signing_input,
    verify_request,
)

# Relay server side
from .directory import (
    InMemoryRecipientDirectory,
    PostgresRecipientDirectory,
    RecipientDirectory,
    RecipientRecord,
)
from .delivery import DeliveryReceipt, DeliveryService, ExpoPushDelivery, Notification
from .gateway import RelayGateway

# Client side
from .client import RelayClient, open_notification

__all__ = [
    # Constants
    "DEFAULT_TIMESTAMP_TOLERANCE_MS",
    "MAX_MESSAGE_LENGTH",
    "NONCE_SIZE",
    "PUBLIC_KEY_SIZE",
    "SEED_SIZE",
    "SIGNATURE_SIZE",
    # Exceptions
    "WhispersError",
    "KeyDerivationError",
    "MalformedKeyError",
    "InvalidIdentityError",
    "EncryptionError",
    "SignatureInvalid",
    "IntegrityError",
    "MalformedRequestError",
    "ExpiredOrFutureTimestampError",
    "AuthenticationError",
    "ReplayedRequestError",
    "RecipientNotFoundError",
    "DeliveryError",
    # Identity
    "Identity",
    "SecretMaterial",
    "IdentityKeys",
    "KeyStore",
    "InMemoryKeyStore",
    "RandomSource",
    "SystemRandomSource",
    "generate",
    "derive_from_seed",
    "sign",
    "agree",
    "verify_signature",
    # Conversation and cipher
    "ConversationId",
    "derive_conversation_id",
    "EncryptedEnvelope",
    "DecryptedMessage",
    "encrypt",
    "decrypt",
    # Relay protocol
    "RelayRequest",
    "Registration",
    "signing_input",
    "sign_request",
    "compose_relay_request",
    "verify_request",
    "RequestAuthenticator",
    "ReplayCache",
    "InMemoryReplayCache",
    # Relay server side
    "RecipientDirectory",
    "RecipientRecord",
    "InMemoryRecipientDirectory",
    "PostgresRecipientDirectory",
    "DeliveryService",
    "DeliveryReceipt",
    "ExpoPushDelivery",
    "Notification",
    "RelayGateway",
    # Client side
    "RelayClient",
    "open_notification",
]
