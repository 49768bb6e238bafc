"""
Symmetric-key ratchet with forward secrecy.

Every message is encrypted under a one-time key derived from a chain key,
and the chain key is replaced after each message. Every ROTATION_INTERVAL
sent messages the root key is re-derived and both chain keys are rebuilt
from it. Keys for messages that have not arrived yet are cached so that
out-of-order delivery can still be decrypted.

Ownership: every function that takes a RatchetState consumes it. The
returned state is the only valid one afterwards; superseded keys of the
input are zeroized. A call that raises leaves its input untouched.
"""

import json
import logging
import threading
from dataclasses import replace
from typing import Dict, NamedTuple, Optional, Tuple, Union

from .keys import MessageKeys, RatchetState, SessionKeys
from .packets import CipherPacket, PacketInput, as_packet, open_packet, seal
from .primitives import (
    KEY_BYTES,
    CryptoError,
    DecryptionError,
    KeyFormatError,
    SkippedKeyNotFoundError,
    from_b64,
    hmac_sha512_256,
    kdf_derive,
    to_b64,
    zeroize,
)

logger = logging.getLogger(__name__)

ROTATION_INTERVAL = 100
SKIPPED_KEY_MAX_AGE = 50
MAX_SKIP = 1000

MESSAGE_KEY_CONSTANT = b"\x01"
CHAIN_KEY_CONSTANT = b"\x02"

# Derivation indices from the session key
ROOT_KEY_INDEX = 1
INITIATOR_CHAIN_INDEX = 2
RESPONDER_CHAIN_INDEX = 3

# Derivation indices from a rotated root key
ROTATED_INITIATOR_CHAIN_INDEX = 1
ROTATED_RESPONDER_CHAIN_INDEX = 2


class EncryptResult(NamedTuple):
    packet: CipherPacket
    state: RatchetState


class DecryptResult(NamedTuple):
    message: str
    state: RatchetState


def _chain_index(responder: bool, sending: bool, rotated: bool) -> int:
    # The initiator sends on the "initiator" chain; the responder mirrors it
    initiator_chain = sending != responder
    if rotated:
        return ROTATED_INITIATOR_CHAIN_INDEX if initiator_chain else ROTATED_RESPONDER_CHAIN_INDEX
    return INITIATOR_CHAIN_INDEX if initiator_chain else RESPONDER_CHAIN_INDEX


def initialize_ratchet(session_key: Union[bytes, bytearray], responder: bool = False) -> RatchetState:
    """
    Create ratchet state from a session key.

    Args:
        session_key: 32-byte key from session establishment
        responder: Mirror the chain indices, so that a responder initialised
            from the same key receives on the initiator's sending chain

    Returns:
        Fresh RatchetState
    """
    if len(session_key) != KEY_BYTES:
        raise KeyFormatError("Session key must be 32 bytes")
    return RatchetState(
        root_key=kdf_derive(session_key, ROOT_KEY_INDEX),
        sending_chain_key=kdf_derive(session_key, _chain_index(responder, sending=True, rotated=False)),
        receiving_chain_key=kdf_derive(session_key, _chain_index(responder, sending=False, rotated=False)),
        responder=responder,
    )


def derive_message_keys(chain_key: Union[bytes, bytearray]) -> MessageKeys:
    """
    One step of the chain: derive a message key and the next chain key.

    Does not modify chain_key.
    """
    return MessageKeys(
        message_key=hmac_sha512_256(chain_key, MESSAGE_KEY_CONSTANT),
        next_chain_key=hmac_sha512_256(chain_key, CHAIN_KEY_CONSTANT),
    )


def _check_interval(interval: int):
    if interval < 1:
        raise ValueError(f"Rotation interval must be at least 1, got {interval}")


def _rotation_point(message_number: int, interval: int) -> int:
    """Send number at the sender's last rotation before sending `message_number`"""
    return message_number - message_number % interval


def advance_chain(state: RatchetState, interval: int = ROTATION_INTERVAL) -> RatchetState:
    """
    Advance the sending chain by one message without encrypting anything.

    A skipped message still counts toward rotation: reaching a multiple of
    `interval` rotates the root exactly as encrypt_with_pfs does, so the
    receiver can follow every rotation by message number alone.
    """
    _check_interval(interval)
    keys = derive_message_keys(state.sending_chain_key)
    zeroize(keys.message_key)
    new_state = replace(
        state,
        sending_chain_key=keys.next_chain_key,
        send_message_number=state.send_message_number + 1,
    )
    zeroize(state.sending_chain_key)
    return rotate_keys(new_state, interval)


def rotate_keys(state: RatchetState, interval: int = ROTATION_INTERVAL) -> RatchetState:
    """
    Re-key the root when the send count reaches a multiple of `interval`.

    The new root is derived from the current root with the send count as
    index, and both chain keys are rebuilt from the new root. Returns the
    input unchanged between boundaries.

    Raises:
        ValueError: If interval is less than 1
    """
    _check_interval(interval)
    number = state.send_message_number
    if number <= 0 or number % interval:
        return state

    new_root = kdf_derive(state.root_key, number)
    new_state = replace(
        state,
        root_key=new_root,
        sending_chain_key=kdf_derive(new_root, _chain_index(state.responder, sending=True, rotated=True)),
        receiving_chain_key=kdf_derive(new_root, _chain_index(state.responder, sending=False, rotated=True)),
        previous_sending_chain_length=number,
    )
    zeroize(state.root_key)
    zeroize(state.sending_chain_key)
    zeroize(state.receiving_chain_key)
    logger.debug("Rotated root key at message %d", number)
    return new_state


def encrypt_with_pfs(message: str, state: RatchetState,
                     interval: int = ROTATION_INTERVAL) -> EncryptResult:
    """
    Encrypt a message under the next sending key.

    The returned state must be persisted before the packet is sent: the
    consumed key is never reused, even if delivery fails.

    Args:
        message: Plaintext
        state: Current state (consumed)
        interval: Root rotation interval

    Returns:
        EncryptResult(packet, state)
    """
    _check_interval(interval)
    keys = derive_message_keys(state.sending_chain_key)
    try:
        packet = seal(
            message,
            keys.message_key,
            message_number=state.send_message_number,
            previous_chain_length=state.previous_sending_chain_length,
        )
    except Exception:
        zeroize(keys.next_chain_key)
        raise
    finally:
        zeroize(keys.message_key)

    advanced = replace(
        state,
        sending_chain_key=keys.next_chain_key,
        send_message_number=state.send_message_number + 1,
    )
    zeroize(state.sending_chain_key)
    return EncryptResult(packet, rotate_keys(advanced, interval))


def _step_receiving(root_key: bytearray, chain_key: bytearray, number: int, responder: bool,
                    interval: int) -> Tuple[bytearray, bytearray, bytearray]:
    """
    Derive the key for receiving position `number` and move to the next one.

    Crossing a rotation boundary applies the rotation the sender performed
    after sending that many messages.

    Returns:
        Tuple of (message_key, root_key, chain_key) for position number + 1
    """
    keys = derive_message_keys(chain_key)
    number += 1
    if number % interval:
        return keys.message_key, root_key, keys.next_chain_key

    zeroize(keys.next_chain_key)
    new_root = kdf_derive(root_key, number)
    new_chain = kdf_derive(new_root, _chain_index(responder, sending=False, rotated=True))
    logger.debug("Followed peer root rotation at message %d", number)
    return keys.message_key, new_root, new_chain


def decrypt_with_pfs(packet: PacketInput, state: RatchetState, interval: int = ROTATION_INTERVAL,
                     max_skip: int = MAX_SKIP) -> DecryptResult:
    """
    Decrypt a packet produced by the mirror ratchet.

    Late messages are decrypted with their cached skipped key, which is then
    discarded. Messages ahead of the expected number cause every key in
    between to be cached.

    Args:
        packet: CipherPacket or its wire dict
        state: Current state (consumed on success)
        interval: Root rotation interval used by the sender
        max_skip: Most message keys that may be derived ahead in one call

    Returns:
        DecryptResult(message, state)

    Raises:
        SkippedKeyNotFoundError: A late message whose key is not cached
        DecryptionError: Tampered, corrupted or mis-keyed packet, or one
            whose previousChainLength disagrees with the rotation schedule
        ValueError: If interval is less than 1
    """
    _check_interval(interval)
    packet = as_packet(packet)
    message_number = packet.message_number or 0
    expected = state.receive_message_number

    # The sender rotates at every multiple of interval it reaches, so the
    # packet must report the last one at or below its own number
    if (packet.previous_chain_length is not None
            and packet.previous_chain_length != _rotation_point(message_number, interval)):
        raise DecryptionError(
            f"Message {message_number} reports a rotation at {packet.previous_chain_length}, "
            f"expected {_rotation_point(message_number, interval)}"
        )

    if message_number < expected:
        skipped_key = state.skipped_keys.get(message_number)
        if skipped_key is None:
            raise SkippedKeyNotFoundError("Message key not found for out-of-order message")
        try:
            message = open_packet(packet, skipped_key)
        except DecryptionError:
            logger.warning("Failed to decrypt out-of-order message %d", message_number)
            raise
        remaining = {number: key for number, key in state.skipped_keys.items()
                     if number != message_number}
        zeroize(skipped_key)
        return DecryptResult(message, replace(state, skipped_keys=remaining))

    if message_number - expected > max_skip:
        raise DecryptionError(f"Too many skipped messages: {message_number - expected}")

    root_key = state.root_key
    chain_key = state.receiving_chain_key
    superseded = []
    skipped: Dict[int, bytearray] = {}
    number = expected
    while True:
        message_key, next_root, next_chain = _step_receiving(
            root_key, chain_key, number, state.responder, interval
        )
        superseded.append(chain_key)
        if next_root is not root_key:
            superseded.append(root_key)
        root_key, chain_key = next_root, next_chain
        if number == message_number:
            break
        skipped[number] = message_key
        number += 1

    try:
        message = open_packet(packet, message_key)
    except DecryptionError:
        logger.warning("Failed to decrypt message %d", message_number)
        originals = (state.root_key, state.receiving_chain_key)
        for key in [message_key, root_key, chain_key, *superseded, *skipped.values()]:
            if not any(key is original for original in originals):
                zeroize(key)
        raise
    finally:
        zeroize(message_key)

    for key in superseded:
        zeroize(key)
    if skipped:
        logger.debug("Cached %d skipped message keys", len(skipped))

    return DecryptResult(message, replace(
        state,
        root_key=root_key,
        receiving_chain_key=chain_key,
        receive_message_number=message_number + 1,
        skipped_keys={**state.skipped_keys, **skipped},
    ))


def cleanup_old_keys(state: RatchetState, max_age: int = SKIPPED_KEY_MAX_AGE) -> RatchetState:
    """
    Evict skipped keys older than receive_message_number - max_age.

    Evicted messages can no longer be decrypted.
    """
    cutoff = state.receive_message_number - max_age
    kept = {}
    evicted = 0
    for number, key in state.skipped_keys.items():
        if number < cutoff:
            zeroize(key)
            evicted += 1
        else:
            kept[number] = key
    if evicted:
        logger.debug("Evicted %d skipped message keys older than %d", evicted, cutoff)
    return replace(state, skipped_keys=kept)


def zeroize_key(key: Optional[bytearray]) -> None:
    """
    Overwrite a key with zeros in place.

    Every key this module hands out is a bytearray. None is ignored.

    Raises:
        TypeError: If given immutable bytes, which cannot be wiped
    """
    zeroize(key)


def ratchets_for_session(session_keys: SessionKeys) -> Tuple[RatchetState, RatchetState]:
    """
    Build the two ratchets of a conversation.

    The outbound ratchet is initialised from tx as initiator, the inbound
    one from rx as responder. Our tx is the peer's rx, so our outbound
    ratchet mirrors the peer's inbound one and vice versa.

    Returns:
        Tuple of (outbound, inbound) RatchetState
    """
    return (
        initialize_ratchet(session_keys.tx, responder=False),
        initialize_ratchet(session_keys.rx, responder=True),
    )


def zeroize_ratchet_state(state: RatchetState) -> None:
    """Wipe the root key, both chain keys and every cached skipped key"""
    zeroize(state.root_key)
    zeroize(state.sending_chain_key)
    zeroize(state.receiving_chain_key)
    for key in state.skipped_keys.values():
        zeroize(key)
    state.skipped_keys.clear()


def _state_to_dict(state: RatchetState) -> Dict:
    return {
        'root_key': to_b64(state.root_key),
        'sending_chain_key': to_b64(state.sending_chain_key),
        'receiving_chain_key': to_b64(state.receiving_chain_key),
        'send_message_number': state.send_message_number,
        'receive_message_number': state.receive_message_number,
        'previous_sending_chain_length': state.previous_sending_chain_length,
        'skipped_keys': {str(number): to_b64(key) for number, key in state.skipped_keys.items()},
        'responder': state.responder,
    }


def _state_from_dict(data: Dict) -> RatchetState:
    return RatchetState(
        root_key=bytearray(from_b64(data['root_key'])),
        sending_chain_key=bytearray(from_b64(data['sending_chain_key'])),
        receiving_chain_key=bytearray(from_b64(data['receiving_chain_key'])),
        send_message_number=data['send_message_number'],
        receive_message_number=data['receive_message_number'],
        previous_sending_chain_length=data['previous_sending_chain_length'],
        skipped_keys={
            int(number): bytearray(from_b64(key))
            for number, key in data.get('skipped_keys', {}).items()
        },
        responder=data.get('responder', False),
    )


class RatchetSession:
    """
    Single-writer owner of one RatchetState.

    All mutations run under a lock, so concurrent callers cannot derive two
    messages from the same chain key.
    """

    def __init__(self, state: RatchetState, interval: int = ROTATION_INTERVAL,
                 max_age: int = SKIPPED_KEY_MAX_AGE):
        _check_interval(interval)
        self._state: Optional[RatchetState] = state
        self._lock = threading.Lock()
        self.interval = interval
        self.max_age = max_age

    @classmethod
    def from_session_key(cls, session_key: Union[bytes, bytearray], responder: bool = False,
                         **kwargs) -> 'RatchetSession':
        return cls(initialize_ratchet(session_key, responder=responder), **kwargs)

    def _require_state(self) -> RatchetState:
        if self._state is None:
            raise CryptoError("Ratchet session is closed")
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is None

    @property
    def send_message_number(self) -> int:
        return self._require_state().send_message_number

    @property
    def receive_message_number(self) -> int:
        return self._require_state().receive_message_number

    @property
    def skipped_key_count(self) -> int:
        return len(self._require_state().skipped_keys)

    def encrypt(self, message: str) -> CipherPacket:
        with self._lock:
            packet, self._state = encrypt_with_pfs(message, self._require_state(), self.interval)
            return packet

    def decrypt(self, packet: PacketInput) -> str:
        with self._lock:
            message, self._state = decrypt_with_pfs(packet, self._require_state(), self.interval)
            return message

    def cleanup(self) -> int:
        """Evict stale skipped keys; returns how many were evicted"""
        with self._lock:
            state = self._require_state()
            before = len(state.skipped_keys)
            self._state = cleanup_old_keys(state, self.max_age)
            return before - len(self._state.skipped_keys)

    def close(self):
        """Zeroize the state; the session cannot be used afterwards"""
        with self._lock:
            if self._state is not None:
                zeroize_ratchet_state(self._state)
                self._state = None

    def export_state(self, storage_key: Union[bytes, bytearray]) -> str:
        """
        Export ratchet state for persistence, sealed under a storage key.

        Returns:
            JSON string of the sealed packet
        """
        with self._lock:
            state_json = json.dumps(_state_to_dict(self._require_state()))
        return json.dumps(seal(state_json, storage_key).to_dict())

    @classmethod
    def import_state(cls, blob: str, storage_key: Union[bytes, bytearray],
                     **kwargs) -> 'RatchetSession':
        """
        Restore a session exported with export_state.

        Raises:
            DecryptionError: If the blob was not sealed under storage_key
        """
        try:
            sealed = json.loads(blob)
        except ValueError as e:
            raise DecryptionError("Malformed exported state") from e
        state_json = open_packet(sealed, storage_key)
        try:
            state = _state_from_dict(json.loads(state_json))
        except (KeyError, ValueError, TypeError, AttributeError, KeyFormatError) as e:
            raise DecryptionError("Malformed exported state") from e
        return cls(state, **kwargs)


class Conversation:
    """
    Ratchets for both directions of a conversation.

    Outgoing messages use a ratchet on our tx key; incoming messages use a
    mirrored ratchet on our rx key. Since our tx is the peer's rx, each of
    our ratchets pairs with the opposite one on the peer's side.
    """

    def __init__(self, session_keys: SessionKeys, interval: int = ROTATION_INTERVAL,
                 max_age: int = SKIPPED_KEY_MAX_AGE):
        _check_interval(interval)
        outbound, inbound = ratchets_for_session(session_keys)
        self.outbound = RatchetSession(outbound, interval=interval, max_age=max_age)
        self.inbound = RatchetSession(inbound, interval=interval, max_age=max_age)

    def encrypt(self, message: str) -> CipherPacket:
        return self.outbound.encrypt(message)

    def decrypt(self, packet: PacketInput) -> str:
        return self.inbound.decrypt(packet)

    def cleanup(self) -> int:
        return self.inbound.cleanup()

    def close(self):
        self.outbound.close()
        self.inbound.close()
