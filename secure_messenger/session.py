"""
Session key establishment.

Both parties derive a pair of directional keys from their own key pair and
the peer's published identity key using crypto_kx. The side playing
"client" is chosen by comparing public keys, so no role flag has to be
exchanged.
"""

import logging
from typing import Dict, Union

import nacl.exceptions
from nacl.bindings import crypto_kx_client_session_keys, crypto_kx_server_session_keys

from .keys import IdentityKeyPair, SessionKeys, SignedPreKeyBundle
from .primitives import (
    KEY_BYTES,
    KeyFormatError,
    SessionEstablishmentError,
    decode_key_bytes,
)

logger = logging.getLogger(__name__)

KeyInput = Union[bytes, bytearray, str]


def _own_key(value: KeyInput, label: str) -> bytes:
    # Locally held keys are either legacy hex (long) or base64 (short)
    if isinstance(value, (bytes, bytearray)):
        if len(value) != KEY_BYTES:
            raise KeyFormatError(f"{label} must be {KEY_BYTES} bytes")
        return bytes(value)
    return decode_key_bytes(value, allow_hex=True, label=label)


def _peer_key(value: KeyInput) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        if len(value) != KEY_BYTES:
            raise KeyFormatError(f"Peer public key must be {KEY_BYTES} bytes")
        return bytes(value)
    return decode_key_bytes(value, allow_hex=False, label="peer public key")


def _peer_identity(their_key_bundle) -> KeyInput:
    if isinstance(their_key_bundle, SignedPreKeyBundle):
        return their_key_bundle.identity_key
    if isinstance(their_key_bundle, dict):
        return their_key_bundle['identityKey']
    return their_key_bundle


def build_session(our_key_pair: Union[IdentityKeyPair, Dict], their_key_bundle,
                  is_client: bool = False) -> SessionKeys:
    """
    Derive transmit/receive keys for a conversation.

    Args:
        our_key_pair: Our X25519 key pair, as an IdentityKeyPair or a dict
            with hex or base64 'publicKey'/'privateKey' strings
        their_key_bundle: The peer's SignedPreKeyBundle, its exchange-format
            dict, or their identity public key
        is_client: Which side of crypto_kx we play (see determine_role)

    Returns:
        SessionKeys where our tx equals the peer's rx and vice versa

    Raises:
        SessionEstablishmentError: If any key is malformed or the exchange fails
    """
    try:
        if isinstance(our_key_pair, IdentityKeyPair):
            our_public = our_key_pair.public_key
            our_private = our_key_pair.private_key
        else:
            our_public = _own_key(our_key_pair['publicKey'], "our public key")
            our_private = _own_key(our_key_pair['privateKey'], "our private key")
        their_public = _peer_key(_peer_identity(their_key_bundle))

        if is_client:
            rx, tx = crypto_kx_client_session_keys(our_public, our_private, their_public)
        else:
            rx, tx = crypto_kx_server_session_keys(our_public, our_private, their_public)
    except (KeyFormatError, KeyError, TypeError) as e:
        raise SessionEstablishmentError(f"Session building failed: {e}") from e
    except nacl.exceptions.CryptoError as e:
        raise SessionEstablishmentError("Session building failed: key exchange rejected") from e

    logger.debug("Established session keys as %s", "client" if is_client else "server")
    return SessionKeys(tx=bytearray(tx), rx=bytearray(rx))


def determine_role(our_public_key: KeyInput, their_public_key: KeyInput) -> bool:
    """
    Decide whether we play the client side of the key exchange.

    The party whose public key has the smaller byte at the first differing
    index is the client. Identical keys default to client.

    Returns:
        True if we are the client
    """
    ours = _peer_key(our_public_key)
    theirs = _peer_key(their_public_key)
    for our_byte, their_byte in zip(ours, theirs):
        if our_byte < their_byte:
            return True
        if our_byte > their_byte:
            return False
    return True
