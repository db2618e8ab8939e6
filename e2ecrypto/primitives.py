"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational cryptographic operations used by the
one-time-key handshake and the Double Ratchet.
"""

import os
import base64
import binascii
from typing import Tuple
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16

_CURVE_PRIME = 2 ** 255 - 19
# Small-order encodings (0, 1, p - 1, p, p + 1) with and without the ignored top bit
LOW_ORDER_KEYS = frozenset(
    (value + high_bit).to_bytes(KEY_LENGTH, "little")
    for value in (0, 1, _CURVE_PRIME - 1, _CURVE_PRIME, _CURVE_PRIME + 1)
    for high_bit in (0, 2 ** 255)
)


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key exchange.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret

    Raises:
        CryptoError: If the peer key is a low-order point
    """
    try:
        return private_key.exchange(public_key)
    except ValueError as e:
        raise CryptoError(f"Key exchange failed: {e}") from e


def kdf_handshake(shared_secret: bytes) -> Tuple[bytes, bytes]:
    """
    Derive the initial root key and chain key from the triple-DH output.

    Args:
        shared_secret: Concatenated DH outputs

    Returns:
        Tuple of (root_key, chain_key)
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=64,
        salt=b'\x00' * KEY_LENGTH,
        info=b"E2E_ROOT"
    )
    output = hkdf.derive(shared_secret)
    return output[:32], output[32:]


def kdf_chain(key: bytes, constant: bytes) -> Tuple[bytes, bytes]:
    """
    KDF chain for ratcheting (HKDF-based).

    Args:
        key: Input key material
        constant: Additional info/context

    Returns:
        Tuple of (chain_key, message_key)
    """
    # 32 bytes chain key, 32 bytes message key
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=64,
        salt=None,
        info=constant
    )
    output = hkdf.derive(key)
    return output[:32], output[32:]


def kdf_root(root_key: bytes, dh_output: bytes) -> Tuple[bytes, bytes]:
    """
    Root KDF for DH ratchet step.

    Args:
        root_key: Current root key
        dh_output: DH exchange output

    Returns:
        Tuple of (new_root_key, new_chain_key)
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=64,
        salt=root_key,
        info=b"DoubleRatchet"
    )
    output = hkdf.derive(dh_output)
    return output[:32], output[32:]


def encrypt_message(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    nonce = os.urandom(NONCE_LENGTH)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
    return nonce + ciphertext


def decrypt_message(key: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        ciphertext: nonce + encrypted message + tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        CryptoError: If decryption fails
    """
    if len(ciphertext) < NONCE_LENGTH + TAG_LENGTH:
        raise CryptoError("Ciphertext too short")

    nonce = ciphertext[:NONCE_LENGTH]
    actual_ciphertext = ciphertext[NONCE_LENGTH:]

    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, actual_ciphertext, associated_data)
    except InvalidTag:
        raise CryptoError("Decryption failed: authentication tag mismatch")


def serialize_public_key(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """Deserialize bytes to X25519 public key"""
    if len(key_bytes) != KEY_LENGTH:
        raise CryptoError(f"Invalid public key length: {len(key_bytes)}")
    return X25519PublicKey.from_public_bytes(key_bytes)


def serialize_private_key(private_key: X25519PrivateKey) -> bytes:
    """Serialize X25519 private key to raw bytes"""
    return private_key.private_bytes_raw()


def deserialize_private_key(key_bytes: bytes) -> X25519PrivateKey:
    """Deserialize raw bytes to X25519 private key"""
    return X25519PrivateKey.from_private_bytes(key_bytes)


def encode_b64(data: bytes) -> str:
    """Unpadded standard base64, the encoding used for keys on the wire"""
    return base64.b64encode(data).decode("ascii").rstrip("=")


def decode_b64(text: str) -> bytes:
    """
    Decode unpadded (or padded) standard base64.

    Raises:
        CryptoError: If the input is not valid base64
    """
    if not isinstance(text, str):
        raise CryptoError("Expected a base64 string")
    try:
        return base64.b64decode(text + "=" * (-len(text) % 4), validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Invalid base64: {e}")


def decode_public_key(text: str) -> bytes:
    """
    Decode a base64 public key, checking its length and rejecting low-order points.

    Raises:
        CryptoError: If the key is malformed or unusable for key exchange
    """
    key_bytes = decode_b64(text)
    if len(key_bytes) != KEY_LENGTH:
        raise CryptoError(f"Invalid public key length: {len(key_bytes)}")
    if key_bytes in LOW_ORDER_KEYS:
        raise CryptoError("Public key is a low-order point")
    return key_bytes
