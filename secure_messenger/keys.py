"""
Key material value types.

Secrets held for the lifetime of a conversation are stored in bytearrays so
they can be zeroized in place when they are superseded.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from .primitives import (
    KEY_BYTES,
    SIGNATURE_BYTES,
    KeyFormatError,
    decode_key_bytes,
    to_b64,
    zeroize,
)


@dataclass(frozen=True)
class IdentityKeyPair:
    """
    X25519 key pair used for identities and pre-keys.

    Attributes:
        public_key: 32-byte public key
        private_key: 32-byte private key
    """
    public_key: bytes
    private_key: bytes

    def __post_init__(self):
        if len(self.public_key) != KEY_BYTES or len(self.private_key) != KEY_BYTES:
            raise KeyFormatError("Key pair members must be 32 bytes")

    def __repr__(self) -> str:
        return f"IdentityKeyPair(public_key={to_b64(self.public_key)!r})"

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'publicKey': to_b64(self.public_key),
            'privateKey': to_b64(self.private_key),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'IdentityKeyPair':
        """Create from dictionary, accepting hex or base64 encodings"""
        return cls(
            public_key=decode_key_bytes(data['publicKey'], label="public key"),
            private_key=decode_key_bytes(data['privateKey'], label="private key"),
        )


@dataclass(frozen=True)
class SignedPreKey:
    key: bytes
    signature: bytes
    key_id: Optional[int] = None

    def __post_init__(self):
        if len(self.key) != KEY_BYTES:
            raise KeyFormatError("Signed pre-key must be 32 bytes")
        if len(self.signature) != SIGNATURE_BYTES:
            raise KeyFormatError("Pre-key signature must be 64 bytes")


@dataclass(frozen=True)
class SignedPreKeyBundle:
    """
    Public key bundle published to peers.

    Attributes:
        identity_key: X25519 identity public key
        signed_pre_key: Pre-key public key and its Ed25519 signature
    """
    identity_key: bytes
    signed_pre_key: SignedPreKey

    def __post_init__(self):
        if len(self.identity_key) != KEY_BYTES:
            raise KeyFormatError("Identity key must be 32 bytes")

    def to_dict(self) -> Dict:
        """Convert to the key bundle exchange format"""
        signed = {
            'key': to_b64(self.signed_pre_key.key),
            'signature': to_b64(self.signed_pre_key.signature),
        }
        if self.signed_pre_key.key_id is not None:
            signed['keyId'] = self.signed_pre_key.key_id
        return {
            'identityKey': to_b64(self.identity_key),
            'signedPreKey': signed,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SignedPreKeyBundle':
        """Create from the key bundle exchange format"""
        # packets imports this module
        from .packets import KeyBundlePayload
        return KeyBundlePayload.parse(data).to_bundle()


@dataclass
class SessionKeys:
    """
    Directional symmetric keys for one conversation.

    Attributes:
        tx: Key for encrypting our outgoing messages
        rx: Key for decrypting the peer's messages
    """
    tx: bytearray
    rx: bytearray

    def __repr__(self) -> str:
        return "SessionKeys(<redacted>)"

    def zeroize(self):
        """Wipe both keys"""
        zeroize(self.tx)
        zeroize(self.rx)


@dataclass
class MessageKeys:
    message_key: bytearray
    next_chain_key: bytearray


@dataclass
class RatchetState:
    """
    Forward-secrecy state of one conversation.

    Attributes:
        root_key: Secret from which both chain keys are (re-)derived
        sending_chain_key: Chain key for the next outgoing message
        receiving_chain_key: Chain key for the next expected incoming message
        send_message_number: Number of messages sent
        receive_message_number: Next expected incoming message number
        previous_sending_chain_length: Send number at the last rotation
        skipped_keys: Message keys derived ahead for out-of-order delivery
        responder: Whether chain derivation indices are mirrored
    """
    root_key: bytearray
    sending_chain_key: bytearray
    receiving_chain_key: bytearray
    send_message_number: int = 0
    receive_message_number: int = 0
    previous_sending_chain_length: int = 0
    skipped_keys: Dict[int, bytearray] = field(default_factory=dict)
    responder: bool = False

    def __repr__(self) -> str:
        return (
            f"RatchetState(send_message_number={self.send_message_number}, "
            f"receive_message_number={self.receive_message_number}, "
            f"previous_sending_chain_length={self.previous_sending_chain_length}, "
            f"skipped={len(self.skipped_keys)}, responder={self.responder})"
        )
