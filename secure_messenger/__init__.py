"""
Cryptographic session layer for end-to-end encrypted messaging.

Implements:
- X25519 identity and pre-key generation with Ed25519 pre-key signatures
- crypto_kx session key establishment with coordination-free role selection
- A symmetric-key ratchet for per-message forward secrecy
- The compact cipher packet wire format
"""

from .primitives import (
    CryptoError,
    KeyFormatError,
    SessionEstablishmentError,
    DecryptionError,
    SkippedKeyNotFoundError,
    DecodedKey,
    KeyEncoding,
    decode_key,
    generate_secure_random,
)
from .keys import (
    IdentityKeyPair,
    SignedPreKey,
    SignedPreKeyBundle,
    SessionKeys,
    MessageKeys,
    RatchetState,
)
from .identity import (
    create_identity,
    create_pre_key,
    key_pair_from_seed,
    sign_pre_key,
    signing_public_key,
    verify_pre_key_signature,
    build_key_bundle,
    validate_public_key,
)
from .session import build_session, determine_role
from .packets import CipherPacket, KeyBundlePayload, encrypt, decrypt
from .ratchet import (
    initialize_ratchet,
    derive_message_keys,
    advance_chain,
    rotate_keys,
    encrypt_with_pfs,
    decrypt_with_pfs,
    cleanup_old_keys,
    zeroize_key,
    zeroize_ratchet_state,
    ratchets_for_session,
    RatchetSession,
    Conversation,
)

__all__ = [
    'CryptoError',
    'KeyFormatError',
    'SessionEstablishmentError',
    'DecryptionError',
    'SkippedKeyNotFoundError',
    'DecodedKey',
    'KeyEncoding',
    'decode_key',
    'generate_secure_random',
    'IdentityKeyPair',
    'SignedPreKey',
    'SignedPreKeyBundle',
    'SessionKeys',
    'MessageKeys',
    'RatchetState',
    'create_identity',
    'create_pre_key',
    'key_pair_from_seed',
    'sign_pre_key',
    'signing_public_key',
    'verify_pre_key_signature',
    'build_key_bundle',
    'validate_public_key',
    'build_session',
    'determine_role',
    'CipherPacket',
    'KeyBundlePayload',
    'encrypt',
    'decrypt',
    'initialize_ratchet',
    'derive_message_keys',
    'advance_chain',
    'rotate_keys',
    'encrypt_with_pfs',
    'decrypt_with_pfs',
    'cleanup_old_keys',
    'zeroize_key',
    'zeroize_ratchet_state',
    'ratchets_for_session',
    'RatchetSession',
    'Conversation',
]
