"""
Identity and pre-key generation.

Identity keys and pre-keys are both plain X25519 key pairs. Pre-keys are
signed with an Ed25519 key seeded from the identity private key.
"""

import logging
from typing import Optional

from nacl.bindings import crypto_kx_seed_keypair

from .keys import IdentityKeyPair, SignedPreKey, SignedPreKeyBundle
from .primitives import (
    KEY_BYTES,
    KeyFormatError,
    decode_key,
    ed25519_from_x25519_seed,
    generate_dh_keypair,
    sign_detached,
    verify_detached,
)

logger = logging.getLogger(__name__)


def create_identity() -> IdentityKeyPair:
    """
    Generate a fresh X25519 identity key pair.

    Returns:
        IdentityKeyPair
    """
    private_key, public_key = generate_dh_keypair()
    logger.debug("Generated identity key pair")
    return IdentityKeyPair(public_key=public_key, private_key=private_key)


def create_pre_key() -> IdentityKeyPair:
    """Generate a pre-key pair (same primitive as the identity)"""
    return create_identity()


def key_pair_from_seed(seed: bytes) -> IdentityKeyPair:
    """
    Deterministically derive an X25519 key pair from a 32-byte seed.

    Used by recovery flows that regenerate an identity from a stored seed.
    """
    if len(seed) != KEY_BYTES:
        raise KeyFormatError("Seed must be 32 bytes")
    public_key, private_key = crypto_kx_seed_keypair(bytes(seed))
    return IdentityKeyPair(public_key=public_key, private_key=private_key)


def sign_pre_key(pre_key: IdentityKeyPair, identity_key: IdentityKeyPair) -> bytes:
    """
    Sign a pre-key's public key with the identity.

    The signing key is the Ed25519 key pair whose seed is the identity's
    X25519 private key.

    Args:
        pre_key: Pre-key pair to sign
        identity_key: Owning identity

    Returns:
        64-byte detached signature
    """
    signing_key = ed25519_from_x25519_seed(identity_key.private_key)
    return sign_detached(signing_key, pre_key.public_key)


def signing_public_key(identity_key: IdentityKeyPair) -> bytes:
    """Ed25519 verify key matching the signatures made by sign_pre_key"""
    return ed25519_from_x25519_seed(identity_key.private_key).public_key().public_bytes_raw()


def verify_pre_key_signature(bundle: SignedPreKeyBundle, verify_key: bytes) -> bool:
    """
    Check a bundle's pre-key signature.

    Args:
        bundle: Published key bundle
        verify_key: Ed25519 public key of the bundle owner

    Returns:
        True if the signature is valid
    """
    return verify_detached(verify_key, bundle.signed_pre_key.key, bundle.signed_pre_key.signature)


def build_key_bundle(identity_key: IdentityKeyPair, pre_key: Optional[IdentityKeyPair] = None,
                     key_id: Optional[int] = 1) -> SignedPreKeyBundle:
    """
    Create the public bundle for an identity.

    Args:
        identity_key: Owning identity
        pre_key: Pre-key to publish; a new one is generated when omitted
        key_id: Identifier published with the signed pre-key

    Returns:
        SignedPreKeyBundle ready for upload
    """
    if pre_key is None:
        pre_key = create_pre_key()
    signature = sign_pre_key(pre_key, identity_key)
    return SignedPreKeyBundle(
        identity_key=identity_key.public_key,
        signed_pre_key=SignedPreKey(key=pre_key.public_key, signature=signature, key_id=key_id),
    )


def validate_public_key(public_key: str) -> bool:
    """True if the text decodes to a 32-byte key"""
    decoded = decode_key(public_key)
    return decoded is not None and len(decoded.data) == KEY_BYTES
