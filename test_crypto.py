#!/usr/bin/env python3
"""
Tests for the cryptographic layer: primitives, one-time-key handshake and
Double Ratchet sessions.
"""

import sys

import pytest
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PublicKey

from e2ecrypto.primitives import (
    generate_dh_keypair,
    dh_exchange,
    encrypt_message,
    decrypt_message,
    kdf_chain,
    kdf_root,
    encode_b64,
    decode_b64,
    decode_public_key,
    CryptoError
)
from e2ecrypto.account import Account
from e2ecrypto.double_ratchet import DoubleRatchet
from e2ecrypto.messages import (
    NormalMessage,
    PreKeyMessage,
    message_to_payload,
    payload_to_message
)
from e2ecrypto.session import Session


def _establish(alice: Account, bob: Account):
    """Alice starts a session with one of Bob's one-time keys"""
    bob.generate_one_time_keys(1)
    one_time_key = decode_b64(next(iter(bob.one_time_keys().values())))
    bob.mark_keys_as_published()
    return alice.create_outbound_session(bob.identity_key, one_time_key)


def _wire(message):
    """Serialize and parse a message the way the relay would carry it"""
    return payload_to_message(message_to_payload(message))


def test_dh_exchange():
    """Test Diffie-Hellman key exchange"""
    alice_private, alice_public = generate_dh_keypair()
    bob_private, bob_public = generate_dh_keypair()

    alice_shared = dh_exchange(alice_private, bob_public)
    bob_shared = dh_exchange(bob_private, alice_public)

    assert alice_shared == bob_shared, "DH exchange failed"
    assert len(alice_shared) == 32, "Wrong shared secret length"


def test_encryption():
    """Test symmetric encryption"""
    key = b"0" * 32
    plaintext = b"Hello, World!"

    ciphertext = encrypt_message(key, plaintext, b"ad")
    assert decrypt_message(key, ciphertext, b"ad") == plaintext, "Decryption failed"
    assert ciphertext != plaintext, "Ciphertext equals plaintext"

    with pytest.raises(CryptoError):
        decrypt_message(b"1" * 32, ciphertext, b"ad")
    with pytest.raises(CryptoError):
        decrypt_message(key, ciphertext, b"other")
    with pytest.raises(CryptoError):
        decrypt_message(key, b"short")


def test_kdf():
    """Test key derivation functions"""
    chain_key, message_key = kdf_chain(b"initial_key_material_32bytes", b"test")
    assert len(chain_key) == 32, "Wrong chain key length"
    assert len(message_key) == 32, "Wrong message key length"
    assert chain_key != message_key, "Keys should be different"

    root_key, chain_key2 = kdf_root(b"0" * 32, b"dh_output_32_bytes_long_test")
    assert len(root_key) == 32, "Wrong root key length"
    assert len(chain_key2) == 32, "Wrong chain key length"


def test_base64_keys():
    """Keys travel as unpadded base64"""
    key = bytes(range(32))
    encoded = encode_b64(key)
    assert not encoded.endswith("=")
    assert decode_b64(encoded) == key
    assert decode_b64(encoded + "=") == key

    with pytest.raises(CryptoError):
        decode_b64("not base64!")


def test_handshake():
    """Test the pre-key handshake and the first message"""
    alice, bob = Account(), Account()
    session = _establish(alice, bob)

    message = _wire(session.encrypt(b"hi"))
    assert isinstance(message, PreKeyMessage), "First message should be a pre-key message"
    assert message.identity_key == alice.identity_key

    result = bob.create_inbound_session(alice.identity_key, message)
    assert result.plaintext == b"hi", "Handshake decryption failed"
    assert result.session.session_id == session.session_id, "Session ids differ"
    assert bob.one_time_keys_pool == {}, "One-time key was not consumed"


def test_consumed_one_time_key_is_rejected():
    """A second session on the same one-time key fails"""
    alice, bob = Account(), Account()
    session = _establish(alice, bob)
    message = _wire(session.encrypt(b"first"))
    bob.create_inbound_session(alice.identity_key, message)

    with pytest.raises(CryptoError):
        bob.create_inbound_session(alice.identity_key, message)


def test_failed_handshake_keeps_one_time_key():
    """The one-time key is only consumed by a message that decrypts"""
    alice, bob, mallory = Account(), Account(), Account()
    session = _establish(alice, bob)
    message = _wire(session.encrypt(b"hi"))

    with pytest.raises(CryptoError):
        bob.create_inbound_session(mallory.identity_key, message)

    message.message.ciphertext = message.message.ciphertext[:-1] + bytes([message.message.ciphertext[-1] ^ 1])
    with pytest.raises(CryptoError):
        bob.create_inbound_session(alice.identity_key, message)

    assert len(bob.one_time_keys_pool) == 1, "One-time key consumed by a failed handshake"


def test_double_ratchet():
    """Test a conversation with replies in both directions"""
    alice, bob = Account(), Account()
    alice_session = _establish(alice, bob)
    bob_session = None

    for round_number in range(4):
        for i in range(3):
            text = f"alice {round_number}/{i}".encode()
            message = _wire(alice_session.encrypt(text))
            if bob_session is None:
                bob_session = bob.create_inbound_session(alice.identity_key, message).session
            else:
                assert bob_session.decrypt(message) == text, "Alice to Bob failed"

        for i in range(2):
            text = f"bob {round_number}/{i}".encode()
            message = _wire(bob_session.encrypt(text))
            assert isinstance(message, NormalMessage), "Responder should send normal messages"
            assert alice_session.decrypt(message) == text, "Bob to Alice failed"

    assert alice_session.prekey is None, "Session still unconfirmed after a reply"
    assert isinstance(alice_session.encrypt(b"after reply"), NormalMessage)


def test_prekey_messages_until_reply():
    """Messages stay pre-key messages until the peer answered, and all of them decrypt"""
    alice, bob = Account(), Account()
    alice_session = _establish(alice, bob)

    first = _wire(alice_session.encrypt(b"one"))
    second = _wire(alice_session.encrypt(b"two"))
    assert isinstance(second, PreKeyMessage)

    bob_session = bob.create_inbound_session(alice.identity_key, first).session
    assert bob_session.matches(second)
    assert bob_session.decrypt(second) == b"two"


def test_out_of_order_messages():
    """Skipped message keys allow late messages to decrypt"""
    alice, bob = Account(), Account()
    alice_session = _establish(alice, bob)
    bob_session = bob.create_inbound_session(
        alice.identity_key, _wire(alice_session.encrypt(b"hello"))
    ).session
    alice_session.decrypt(_wire(bob_session.encrypt(b"ack")))

    messages = [_wire(alice_session.encrypt(f"m{i}".encode())) for i in range(4)]
    assert bob_session.decrypt(messages[3]) == b"m3"
    assert bob_session.decrypt(messages[1]) == b"m1"
    assert bob_session.decrypt(messages[0]) == b"m0"
    assert bob_session.decrypt(messages[2]) == b"m2"


def test_failed_decryption_keeps_state():
    """A tampered or replayed message leaves the session usable"""
    alice, bob = Account(), Account()
    alice_session = _establish(alice, bob)
    bob_session = bob.create_inbound_session(
        alice.identity_key, _wire(alice_session.encrypt(b"hello"))
    ).session

    reply = _wire(bob_session.encrypt(b"reply"))
    tampered = _wire(reply)
    tampered.ciphertext = tampered.ciphertext[:-1] + bytes([tampered.ciphertext[-1] ^ 1])

    with pytest.raises(CryptoError):
        alice_session.decrypt(tampered)
    assert alice_session.decrypt(reply) == b"reply", "State was corrupted by a failed decryption"

    with pytest.raises(CryptoError):
        alice_session.decrypt(reply)
    message = _wire(alice_session.encrypt(b"still works"))
    assert bob_session.decrypt(message) == b"still works"


def test_too_many_skipped_messages():
    """A chain index far ahead is refused"""
    alice, bob = Account(), Account()
    alice_session = _establish(alice, bob)
    bob_session = bob.create_inbound_session(
        alice.identity_key, _wire(alice_session.encrypt(b"hello"))
    ).session

    message = _wire(alice_session.encrypt(b"later"))
    message.message.chain_index = DoubleRatchet.MAX_SKIP + 10
    with pytest.raises(CryptoError):
        bob_session.decrypt(message)


def test_state_export_import():
    """Sessions and accounts survive serialization"""
    alice, bob = Account(), Account()
    alice_session = _establish(alice, bob)
    first = _wire(alice_session.encrypt(b"hello"))

    restored_bob = Account.from_pickle(bob.pickle())
    assert restored_bob.identity_key == bob.identity_key
    bob_session = restored_bob.create_inbound_session(alice.identity_key, first).session

    bob_session = Session.from_pickle(bob_session.pickle())
    alice_session = Session.from_pickle(alice_session.pickle())

    assert alice_session.decrypt(_wire(bob_session.encrypt(b"reply"))) == b"reply"
    assert bob_session.decrypt(_wire(alice_session.encrypt(b"again"))) == b"again"

    with pytest.raises(CryptoError):
        Session.from_pickle({"session_id": "x"})


def test_one_time_key_pool():
    """Key publication marking and the pool bound"""
    account = Account()
    account.generate_one_time_keys(3)
    assert len(account.one_time_keys()) == 3
    account.mark_keys_as_published()
    assert account.one_time_keys() == {}, "Published keys listed as unpublished"

    account.generate_one_time_keys(Account.MAX_ONE_TIME_KEYS)
    assert len(account.one_time_keys_pool) == Account.MAX_ONE_TIME_KEYS
    assert len(account.one_time_keys()) == Account.MAX_ONE_TIME_KEYS


def test_low_order_keys_are_rejected():
    """Small-order peer keys fail with CryptoError and leave sessions and one-time keys intact"""
    private_key, _ = generate_dh_keypair()
    with pytest.raises(CryptoError):
        dh_exchange(private_key, X25519PublicKey.from_public_bytes(bytes(32)))
    with pytest.raises(CryptoError):
        decode_public_key(encode_b64(bytes(32)))
    with pytest.raises(CryptoError):
        decode_public_key(encode_b64((1).to_bytes(32, "little")))

    alice, bob = Account(), Account()
    alice_session = _establish(alice, bob)
    first = _wire(alice_session.encrypt(b"hello"))

    forged = _wire(first)
    forged.base_key = bytes(32)
    with pytest.raises(CryptoError):
        bob.create_inbound_session(alice.identity_key, forged)
    assert len(bob.one_time_keys_pool) == 1, "One-time key consumed by a forged handshake"

    bob_session = bob.create_inbound_session(alice.identity_key, first).session
    alice_session.decrypt(_wire(bob_session.encrypt(b"ack")))

    message = _wire(alice_session.encrypt(b"next"))
    forged = _wire(message)
    forged.ratchet_key = bytes(32)
    with pytest.raises(CryptoError):
        bob_session.decrypt(forged)
    assert bob_session.decrypt(message) == b"next", "State was corrupted by a low-order ratchet key"


def test_malformed_payloads():
    """Payloads that are not ratchet messages are rejected"""
    for payload in [None, 7, "text", {"type": 1}, {"type": 5, "body": {}},
                    {"type": 1, "body": {"ratchet_key": "AAAA"}}, {"type": True, "body": {}}]:
        with pytest.raises(CryptoError):
            payload_to_message(payload)


def run_all_tests():
    """Run all tests"""
    tests = [value for name, value in sorted(globals().items()) if name.startswith("test_")]
    failed = 0
    for test in tests:
        try:
            test()
            print(f"✓ {test.__name__}")
        except Exception as e:
            failed += 1
            print(f"✗ {test.__name__}: {e!r}")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(run_all_tests())
