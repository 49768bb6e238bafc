"""
Wire format and symmetric encryption of message payloads.

A CipherPacket is the only structure that crosses the network. Byte fields
are URL-safe base64 without padding; transport and storage layers carry it
verbatim.
"""

import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .keys import SessionKeys, SignedPreKey, SignedPreKeyBundle
from .primitives import (
    KEY_BYTES,
    SIGNATURE_BYTES,
    DecryptionError,
    KeyFormatError,
    decode_key_bytes,
    from_b64,
    secretbox_decrypt,
    secretbox_encrypt,
    to_b64,
)

logger = logging.getLogger(__name__)


class CipherPacket(BaseModel):
    """Encrypted payload: c = ciphertext, n = nonce"""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    c: str
    n: str
    message_number: Optional[int] = Field(default=None, alias="messageNumber", ge=0)
    previous_chain_length: Optional[int] = Field(default=None, alias="previousChainLength", ge=0)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON-compatible wire object"""
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CipherPacket':
        """
        Validate a wire object.

        Raises:
            DecryptionError: If the object is not a cipher packet
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise DecryptionError("Malformed cipher packet") from e


class SignedPreKeyPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key_id: Optional[int] = Field(default=None, alias="keyId")
    key: str
    signature: str


class KeyBundlePayload(BaseModel):
    """Key bundle as served by the key directory"""
    model_config = ConfigDict(populate_by_name=True)

    identity_key: str = Field(alias="identityKey")
    signed_pre_key: SignedPreKeyPayload = Field(alias="signedPreKey")

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> 'KeyBundlePayload':
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise KeyFormatError("Malformed key bundle") from e

    def to_bundle(self) -> SignedPreKeyBundle:
        """Decode the base64 fields into a SignedPreKeyBundle"""
        return SignedPreKeyBundle(
            identity_key=decode_key_bytes(self.identity_key, allow_hex=False, label="identity key"),
            signed_pre_key=SignedPreKey(
                key=decode_key_bytes(self.signed_pre_key.key, allow_hex=False, label="signed pre-key"),
                signature=decode_key_bytes(
                    self.signed_pre_key.signature,
                    length=SIGNATURE_BYTES,
                    allow_hex=False,
                    label="pre-key signature",
                ),
                key_id=self.signed_pre_key.key_id,
            ),
        )


PacketInput = Union[CipherPacket, Dict[str, Any]]


def as_packet(packet: PacketInput) -> CipherPacket:
    if isinstance(packet, CipherPacket):
        return packet
    return CipherPacket.from_dict(packet)


def seal(message: str, key: Union[bytes, bytearray], message_number: Optional[int] = None,
         previous_chain_length: Optional[int] = None) -> CipherPacket:
    """
    Encrypt a text message under a 32-byte key.

    Args:
        message: Plaintext
        key: Symmetric key
        message_number: Ratchet message number to tag the packet with
        previous_chain_length: Sender's chain length at its last rotation

    Returns:
        CipherPacket
    """
    ciphertext, nonce = secretbox_encrypt(key, message.encode("utf-8"))
    return CipherPacket(
        c=to_b64(ciphertext),
        n=to_b64(nonce),
        message_number=message_number,
        previous_chain_length=previous_chain_length,
    )


def open_packet(packet: PacketInput, key: Union[bytes, bytearray]) -> str:
    """
    Decrypt a packet under a 32-byte key.

    Raises:
        DecryptionError: On malformed fields, authentication failure or
            a plaintext that is not UTF-8
    """
    packet = as_packet(packet)
    try:
        ciphertext = from_b64(packet.c)
        nonce = from_b64(packet.n)
    except KeyFormatError as e:
        raise DecryptionError("Failed to decrypt message") from e

    plaintext = secretbox_decrypt(key, ciphertext, nonce)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Failed to decrypt message") from e


def encrypt(message: str, session_keys: SessionKeys) -> CipherPacket:
    """Encrypt a message with our transmit key"""
    if len(session_keys.tx) != KEY_BYTES:
        raise KeyFormatError("Transmit key must be 32 bytes")
    return seal(message, session_keys.tx)


def decrypt(packet: PacketInput, session_keys: SessionKeys) -> str:
    """
    Decrypt a peer's message with our receive key.

    Raises:
        DecryptionError: If the packet was tampered with, corrupted, or
            encrypted under a different key
    """
    if len(session_keys.rx) != KEY_BYTES:
        raise KeyFormatError("Receive key must be 32 bytes")
    try:
        return open_packet(packet, session_keys.rx)
    except DecryptionError:
        logger.warning("Failed to decrypt message")
        raise
