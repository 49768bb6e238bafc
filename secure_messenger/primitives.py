"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations used by the session layer:
X25519 key generation, Ed25519 signing, keyed BLAKE2b derivation, the
chain MAC, XSalsa20-Poly1305 secretbox and the key encodings exchanged
with peers.
"""

import base64
import binascii
import hashlib
import hmac
import os
import re
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives import serialization
import nacl.exceptions
from nacl.encoding import RawEncoder
from nacl.hash import blake2b
from nacl.secret import SecretBox


KEY_BYTES = 32
NONCE_BYTES = SecretBox.NONCE_SIZE
SIGNATURE_BYTES = 64
KDF_CONTEXT = "PFSROOT0"

# Encoded private keys longer than this are the legacy hex form
HEX_KEY_MIN_LENGTH = 50

_URLSAFE_ALPHABET = re.compile(r"^[A-Za-z0-9_-]*$")
_HEX_ALPHABET = re.compile(r"^[0-9a-fA-F]*$")


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyFormatError(CryptoError):
    """A key has the wrong length or could not be decoded"""
    pass


class SessionEstablishmentError(CryptoError):
    """Session keys could not be derived"""
    pass


class DecryptionError(CryptoError):
    """Authenticated decryption failed"""
    pass


class SkippedKeyNotFoundError(DecryptionError):
    """No cached key exists for an out-of-order message"""
    pass


class KeyEncoding(Enum):
    HEX = "hex"
    BASE64_URLSAFE = "base64url"
    BASE64 = "base64"


@dataclass(frozen=True)
class DecodedKey:
    """
    Result of decoding a textual key.

    Attributes:
        data: Raw key bytes
        encoding: The encoding the text was found to be in
    """
    data: bytes
    encoding: KeyEncoding


def generate_dh_keypair() -> Tuple[bytes, bytes]:
    """
    Generate a Curve25519 Diffie-Hellman keypair.

    Returns:
        Tuple of (private_key, public_key) as raw 32-byte strings
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key.private_bytes_raw(), serialize_public_key(public_key)


def generate_secure_random(length: int) -> bytes:
    """Return `length` bytes from the OS CSPRNG"""
    return os.urandom(length)


def ed25519_from_x25519_seed(x25519_private: bytes) -> Ed25519PrivateKey:
    """
    Build an Ed25519 signing key whose seed is the first 32 bytes of an
    X25519 private key.

    Existing key bundles are signed this way; replace this function to move
    to a dedicated Ed25519 identity.
    """
    if len(x25519_private) < KEY_BYTES:
        raise KeyFormatError("Identity private key is too short to seed a signing key")
    return Ed25519PrivateKey.from_private_bytes(bytes(x25519_private[:KEY_BYTES]))


def sign_detached(signing_key: Ed25519PrivateKey, message: bytes) -> bytes:
    """Produce a 64-byte detached Ed25519 signature"""
    return signing_key.sign(message)


def verify_detached(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """
    Verify a detached Ed25519 signature.

    Returns:
        True if the signature is valid, False otherwise
    """
    if len(public_key) != KEY_BYTES or len(signature) != SIGNATURE_BYTES:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except InvalidSignature:
        return False
    return True


def kdf_derive(master_key: Union[bytes, bytearray], subkey_id: int,
               context: str = KDF_CONTEXT) -> bytearray:
    """
    Derive a 32-byte subkey from a master key.

    Same construction as libsodium's crypto_kdf_derive_from_key: BLAKE2b
    keyed with the master key, the subkey id as a little-endian uint64 salt
    and the 8-byte context as personalisation.

    Args:
        master_key: 32-byte master key
        subkey_id: Derivation index (uint64)
        context: 8-character context label

    Returns:
        32-byte subkey
    """
    if len(master_key) != KEY_BYTES:
        raise KeyFormatError("Master key must be 32 bytes")
    ctx = context.encode("ascii")
    if len(ctx) != 8:
        raise ValueError("KDF context must be exactly 8 bytes")
    salt = struct.pack("<Q", subkey_id) + b"\x00" * 8
    person = ctx + b"\x00" * 8
    subkey = blake2b(
        b"",
        digest_size=KEY_BYTES,
        key=bytes(master_key),
        salt=salt,
        person=person,
        encoder=RawEncoder,
    )
    return bytearray(subkey)


def hmac_sha512_256(key: Union[bytes, bytearray], data: bytes) -> bytearray:
    """
    Compute HMAC-SHA512-256 (libsodium crypto_auth).

    Returns:
        32-byte tag
    """
    return bytearray(hmac.new(bytes(key), data, hashlib.sha512).digest()[:KEY_BYTES])


def secretbox_encrypt(key: Union[bytes, bytearray], plaintext: bytes) -> Tuple[bytes, bytes]:
    """
    Encrypt with XSalsa20-Poly1305 under a fresh random nonce.

    Returns:
        Tuple of (ciphertext with MAC prefix, nonce)
    """
    nonce = generate_secure_random(NONCE_BYTES)
    box = SecretBox(bytes(key))
    encrypted = box.encrypt(plaintext, nonce)
    return encrypted.ciphertext, nonce


def secretbox_decrypt(key: Union[bytes, bytearray], ciphertext: bytes, nonce: bytes) -> bytes:
    """
    Decrypt and authenticate a secretbox ciphertext.

    Raises:
        DecryptionError: If the nonce is malformed or authentication fails
    """
    if len(nonce) != NONCE_BYTES:
        raise DecryptionError("Failed to decrypt message")
    if len(ciphertext) < SecretBox.MACBYTES:
        raise DecryptionError("Failed to decrypt message")
    try:
        return SecretBox(bytes(key)).decrypt(ciphertext, nonce)
    except nacl.exceptions.CryptoError as e:
        raise DecryptionError("Failed to decrypt message") from e


def zeroize(key: Optional[bytearray]) -> None:
    """
    Overwrite a mutable key buffer with zeros.

    Raises:
        TypeError: If the key is not a bytearray (immutable bytes cannot be wiped)
    """
    if key is None:
        return
    if not isinstance(key, bytearray):
        raise TypeError(f"Only bytearray keys can be zeroized, got {type(key).__name__}")
    key[:] = b"\x00" * len(key)


def to_b64(data: Union[bytes, bytearray]) -> str:
    """Encode bytes as URL-safe base64 without padding"""
    return base64.urlsafe_b64encode(bytes(data)).rstrip(b"=").decode("ascii")


def from_b64(text: str) -> bytes:
    """
    Decode URL-safe base64 without padding.

    Raises:
        KeyFormatError: If the text is not URL-safe base64
    """
    data = _try_urlsafe_b64(text)
    if data is None:
        raise KeyFormatError("Invalid URL-safe base64 value")
    return data


def _try_hex(text: str) -> Optional[bytes]:
    if len(text) % 2 or not _HEX_ALPHABET.match(text):
        return None
    return bytes.fromhex(text)


def _try_urlsafe_b64(text: str) -> Optional[bytes]:
    stripped = text.rstrip("=")
    if not _URLSAFE_ALPHABET.match(stripped) or len(stripped) % 4 == 1:
        return None
    padded = stripped + "=" * (-len(stripped) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return None


def _try_standard_b64(text: str) -> Optional[bytes]:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None


def decode_key(text: str, allow_hex: bool = True) -> Optional[DecodedKey]:
    """
    Decode a textual key, detecting its encoding.

    Attempts run in order: hex (only for text longer than
    HEX_KEY_MIN_LENGTH), URL-safe base64, standard base64.

    Args:
        text: Encoded key
        allow_hex: Whether the legacy hex form is accepted

    Returns:
        DecodedKey, or None if no attempt succeeded
    """
    if not isinstance(text, str) or not text:
        return None

    if allow_hex and len(text) > HEX_KEY_MIN_LENGTH:
        data = _try_hex(text)
        if data is not None:
            return DecodedKey(data, KeyEncoding.HEX)

    data = _try_urlsafe_b64(text)
    if data is not None:
        return DecodedKey(data, KeyEncoding.BASE64_URLSAFE)

    data = _try_standard_b64(text)
    if data is not None:
        return DecodedKey(data, KeyEncoding.BASE64)

    return None


def decode_key_bytes(text: str, length: int = KEY_BYTES, allow_hex: bool = True,
                     label: str = "key") -> bytes:
    """
    Decode a textual key and check its length.

    Raises:
        KeyFormatError: If decoding fails or the length is wrong
    """
    decoded = decode_key(text, allow_hex=allow_hex)
    if decoded is None:
        raise KeyFormatError(f"Could not decode {label}")
    if len(decoded.data) != length:
        raise KeyFormatError(f"{label} must be {length} bytes, got {len(decoded.data)}")
    return decoded.data


def serialize_public_key(public_key) -> bytes:
    """Serialize an X25519 public key to raw bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
