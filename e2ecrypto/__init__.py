"""
Cryptographic module for end-to-end encrypted messaging.

Implements:
- One-time-key triple Diffie-Hellman session establishment
- Double Ratchet algorithm for forward secrecy
"""

from .primitives import (
    encode_b64,
    decode_b64,
    decode_public_key,
    CryptoError
)
from .messages import (
    NormalMessage,
    PreKeyMessage,
    RatchetMessage,
    message_to_payload,
    payload_to_message
)
from .session import Session, SessionConfig
from .account import Account, InboundCreationResult

__all__ = [
    'encode_b64',
    'decode_b64',
    'decode_public_key',
    'CryptoError',
    'NormalMessage',
    'PreKeyMessage',
    'RatchetMessage',
    'message_to_payload',
    'payload_to_message',
    'Session',
    'SessionConfig',
    'Account',
    'InboundCreationResult'
]
