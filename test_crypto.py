#!/usr/bin/env python3
"""
Tests for identity keys, session establishment and the packet format.
"""

import base64
import hashlib
import os
import struct
import sys

import pytest
from nacl.signing import SigningKey

from secure_messenger.identity import (
    build_key_bundle,
    create_identity,
    create_pre_key,
    key_pair_from_seed,
    sign_pre_key,
    signing_public_key,
    validate_public_key,
    verify_pre_key_signature,
)
from secure_messenger.keys import IdentityKeyPair, SessionKeys, SignedPreKeyBundle
from secure_messenger.packets import CipherPacket, decrypt, encrypt
from secure_messenger.primitives import (
    DecryptionError,
    KeyEncoding,
    KeyFormatError,
    SessionEstablishmentError,
    decode_key,
    kdf_derive,
    to_b64,
)
from secure_messenger.session import build_session, determine_role


def _establish(alice, bob):
    alice_is_client = determine_role(alice.public_key, bob.public_key)
    bob_is_client = determine_role(bob.public_key, alice.public_key)
    alice_keys = build_session(alice, build_key_bundle(bob), is_client=alice_is_client)
    bob_keys = build_session(bob, build_key_bundle(alice), is_client=bob_is_client)
    return alice_keys, bob_keys


def _tamper(packet):
    data = packet.to_dict()
    c = data['c']
    data['c'] = ('B' if c[0] == 'A' else 'A') + c[1:]
    return data


def test_create_identity():
    """Identity and pre-keys are fresh 32-byte X25519 pairs"""
    identity = create_identity()
    pre_key = create_pre_key()

    assert len(identity.public_key) == 32, "Wrong public key length"
    assert len(identity.private_key) == 32, "Wrong private key length"
    assert identity.public_key != pre_key.public_key, "Keys should be fresh"
    assert to_b64(identity.private_key) not in repr(identity), "Private key leaked in repr"


def test_key_pair_from_seed():
    """Seeded key pairs are deterministic"""
    seed = bytes(range(32))
    assert key_pair_from_seed(seed) == key_pair_from_seed(seed)
    assert key_pair_from_seed(seed) != key_pair_from_seed(bytes(32))

    with pytest.raises(KeyFormatError):
        key_pair_from_seed(b"short")


def test_sign_pre_key():
    """Pre-key signatures use the identity private key as an Ed25519 seed"""
    identity = create_identity()
    pre_key = create_pre_key()

    signature = sign_pre_key(pre_key, identity)
    assert len(signature) == 64, "Wrong signature length"

    # Same result as libsodium crypto_sign_seed_keypair + crypto_sign_detached
    expected = SigningKey(identity.private_key[:32]).sign(pre_key.public_key).signature
    assert signature == expected, "Signature differs from seed-derived Ed25519 key"


def test_verify_pre_key_signature():
    """Bundles verify under the owner's signing key and nobody else's"""
    identity = create_identity()
    bundle = build_key_bundle(identity)

    assert verify_pre_key_signature(bundle, signing_public_key(identity))
    assert not verify_pre_key_signature(bundle, signing_public_key(create_identity()))

    forged = SignedPreKeyBundle.from_dict({
        **bundle.to_dict(),
        'signedPreKey': {**bundle.to_dict()['signedPreKey'], 'key': to_b64(create_pre_key().public_key)},
    })
    assert not verify_pre_key_signature(forged, signing_public_key(identity))


def test_bundle_exchange_format():
    """Bundles parse from URL-safe or standard base64"""
    identity = create_identity()
    bundle = build_key_bundle(identity, key_id=7)
    data = bundle.to_dict()

    assert data['signedPreKey']['keyId'] == 7
    assert '=' not in data['identityKey'], "Canonical encoding has no padding"
    assert SignedPreKeyBundle.from_dict(data) == bundle

    standard = {
        'identityKey': base64.b64encode(bundle.identity_key).decode(),
        'signedPreKey': {
            'key': base64.b64encode(bundle.signed_pre_key.key).decode(),
            'signature': base64.b64encode(bundle.signed_pre_key.signature).decode(),
        },
    }
    parsed = SignedPreKeyBundle.from_dict(standard)
    assert parsed.identity_key == bundle.identity_key
    assert parsed.signed_pre_key.key_id is None


def test_bundle_rejects_malformed_input():
    """Missing fields and short keys are key format errors"""
    with pytest.raises(KeyFormatError):
        SignedPreKeyBundle.from_dict({'identityKey': to_b64(bytes(32))})

    with pytest.raises(KeyFormatError):
        SignedPreKeyBundle.from_dict({
            'identityKey': to_b64(bytes(16)),
            'signedPreKey': {'key': to_b64(bytes(32)), 'signature': to_b64(bytes(64))},
        })


def test_decode_key():
    """Encodings are detected in order: hex, URL-safe base64, standard base64"""
    raw = bytes([0xfb, 0xff, 0xfe] + list(range(29)))

    assert decode_key(raw.hex()) == decode_key(raw.hex().upper())
    assert decode_key(raw.hex()).encoding == KeyEncoding.HEX
    assert decode_key(to_b64(raw)).encoding == KeyEncoding.BASE64_URLSAFE
    assert decode_key(base64.b64encode(raw).decode()).encoding == KeyEncoding.BASE64
    assert decode_key(base64.b64encode(raw).decode()).data == raw
    assert decode_key(to_b64(raw)).data == raw
    assert decode_key("not a key!") is None
    assert decode_key("") is None


def test_validate_public_key():
    """Only text that decodes to 32 bytes is a valid public key"""
    identity = create_identity()
    assert validate_public_key(to_b64(identity.public_key))
    assert validate_public_key(base64.b64encode(identity.public_key).decode())
    assert not validate_public_key(to_b64(bytes(31)))
    assert not validate_public_key("%%%")


def test_kdf_matches_crypto_kdf():
    """Subkeys follow crypto_kdf_derive_from_key's BLAKE2b parameters"""
    master = bytes(range(32))
    expected = hashlib.blake2b(
        b"",
        digest_size=32,
        key=master,
        salt=struct.pack("<Q", 3) + bytes(8),
        person=b"PFSROOT0" + bytes(8),
    ).digest()

    assert bytes(kdf_derive(master, 3)) == expected
    assert kdf_derive(master, 1) != kdf_derive(master, 2)


def test_determine_role_symmetry():
    """Two distinct keys always get complementary roles"""
    for _ in range(20):
        a = create_identity().public_key
        b = create_identity().public_key
        assert determine_role(a, b) != determine_role(b, a), "Roles must be complementary"

    low = bytes([1] + [0] * 31)
    high = bytes([2] + [0] * 31)
    assert determine_role(low, high) is True
    assert determine_role(high, low) is False
    assert determine_role(to_b64(low), base64.b64encode(high).decode()) is True
    assert determine_role(low, low) is True, "Equal keys default to client"


def test_session_agreement():
    """Each side's tx key is the other side's rx key"""
    alice = create_identity()
    bob = create_identity()
    alice_keys, bob_keys = _establish(alice, bob)

    assert alice_keys.tx == bob_keys.rx, "Alice tx != Bob rx"
    assert alice_keys.rx == bob_keys.tx, "Alice rx != Bob tx"
    assert alice_keys.tx != alice_keys.rx, "Directional keys must differ"
    assert len(alice_keys.tx) == 32


def test_session_keys_zeroize():
    """Teardown wipes both directional keys"""
    alice_keys, _ = _establish(create_identity(), create_identity())
    alice_keys.zeroize()

    assert alice_keys.tx == bytearray(32)
    assert alice_keys.rx == bytearray(32)
    assert "redacted" in repr(alice_keys)


def test_build_session_accepts_legacy_encodings():
    """Own keys may be hex or base64, peer keys URL-safe or standard base64"""
    alice = create_identity()
    bob = create_identity()
    alice_is_client = determine_role(alice.public_key, bob.public_key)

    expected = build_session(alice, bob.public_key, is_client=alice_is_client)

    hex_keys = {'publicKey': alice.public_key.hex(), 'privateKey': alice.private_key.hex()}
    standard_bundle = {
        'identityKey': base64.b64encode(bob.public_key).decode(),
        'signedPreKey': {'key': '', 'signature': ''},
    }
    from_hex = build_session(hex_keys, standard_bundle, is_client=alice_is_client)
    from_b64 = build_session(alice.to_dict(), to_b64(bob.public_key), is_client=alice_is_client)

    assert from_hex.tx == expected.tx and from_hex.rx == expected.rx
    assert from_b64.tx == expected.tx and from_b64.rx == expected.rx


def test_build_session_rejects_bad_keys():
    """Malformed key material never yields session keys"""
    alice = create_identity()

    with pytest.raises(SessionEstablishmentError):
        build_session(alice, to_b64(bytes(16)), is_client=True)

    with pytest.raises(SessionEstablishmentError):
        build_session(alice, "@@not-base64@@", is_client=True)

    with pytest.raises(SessionEstablishmentError):
        build_session({'publicKey': 'abc'}, alice.public_key, is_client=False)


def test_packet_round_trip():
    """Messages encrypted with our tx key decrypt with the peer's rx key"""
    alice_keys, bob_keys = _establish(create_identity(), create_identity())

    packet = encrypt("Hello, Bob! éè", alice_keys)
    assert decrypt(packet, bob_keys) == "Hello, Bob! éè"
    assert decrypt(packet.to_dict(), bob_keys) == "Hello, Bob! éè"

    reply = encrypt("Hi Alice!", bob_keys)
    assert decrypt(reply, alice_keys) == "Hi Alice!"


def test_packet_wire_format():
    """Packets carry unpadded URL-safe base64 and a 24-byte nonce"""
    keys = SessionKeys(tx=bytearray(32), rx=bytearray(32))
    data = encrypt("ping", keys).to_dict()

    assert set(data) == {'c', 'n'}
    assert '=' not in data['c'] and '=' not in data['n']
    assert len(base64.urlsafe_b64decode(data['n'] + '=' * (-len(data['n']) % 4))) == 24

    tagged = CipherPacket(c=data['c'], n=data['n'], message_number=3, previous_chain_length=0)
    assert tagged.to_dict() == {**data, 'messageNumber': 3, 'previousChainLength': 0}
    assert CipherPacket.from_dict(tagged.to_dict()) == tagged


def test_decrypt_failures():
    """Wrong keys, tampering and truncation all raise DecryptionError"""
    alice_keys, bob_keys = _establish(create_identity(), create_identity())
    packet = encrypt("secret", alice_keys)

    with pytest.raises(DecryptionError):
        decrypt(packet, alice_keys)

    with pytest.raises(DecryptionError):
        decrypt(_tamper(packet), bob_keys)

    truncated = packet.to_dict()
    truncated['c'] = truncated['c'][:10]
    with pytest.raises(DecryptionError):
        decrypt(truncated, bob_keys)

    with pytest.raises(DecryptionError):
        decrypt({**packet.to_dict(), 'n': packet.n[:8]}, bob_keys)

    with pytest.raises(DecryptionError):
        decrypt({'c': packet.c}, bob_keys)


def test_identity_key_pair_from_dict():
    """Stored key pairs load from hex or base64"""
    identity = create_identity()
    hex_form = {'publicKey': identity.public_key.hex(), 'privateKey': identity.private_key.hex()}

    assert IdentityKeyPair.from_dict(identity.to_dict()) == identity
    assert IdentityKeyPair.from_dict(hex_form) == identity


def run_all_tests():
    """Run all tests"""
    return pytest.main([os.path.dirname(os.path.abspath(__file__)), "-q"])


if __name__ == "__main__":
    sys.exit(run_all_tests())
