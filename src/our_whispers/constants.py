"""Constants for the whispers identity, cipher and relay protocol."""

# Key material
SEED_SIZE = 32
PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64
SHARED_SECRET_SIZE = 32
CONVERSATION_ID_SIZE = 32

# ChaCha20-Poly1305
NONCE_SIZE = 12  # 96 bits
TAG_SIZE = 16

# Identity wire form field names (order is part of the canonical encoding)
SIGNING_PUBLIC_FIELD = "signingPublic"
AGREEMENT_PUBLIC_FIELD = "agreementPublic"

# Key store entry names
PUBLIC_KEY_ENTRY = "user_public_key"
PRIVATE_KEY_ENTRY = "user_private_key"

# Relay limits
DEFAULT_TIMESTAMP_TOLERANCE_MS = 5 * 60 * 1000
MAX_IDENTITY_LENGTH = 500
MAX_ENCRYPTED_MESSAGE_LENGTH = 5000
MAX_MESSAGE_LENGTH = 1000
MAX_DELIVERY_TOKEN_LENGTH = 256
MAX_TIMESTAMP_MS = 2**63 - 1

# Registrations older than this are swept by the cleanup endpoint
DEFAULT_STALE_AFTER_HOURS = 24

# Push notification text (the payload itself stays opaque)
NOTIFICATION_TITLE = "Ring ring!"
NOTIFICATION_BODY = "A new message has arrived"
