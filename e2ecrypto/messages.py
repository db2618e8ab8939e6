"""
Wire format of ratchet messages.

A payload travelling through the relay is a dictionary ``{"type": T, "body": B}``
where ``T`` is :data:`MESSAGE_TYPE_PREKEY` for session-establishing messages and
:data:`MESSAGE_TYPE_NORMAL` for messages inside an established session.
"""

from typing import Any, Dict, Union
from dataclasses import dataclass

from .primitives import CryptoError, encode_b64, decode_b64, decode_public_key


MESSAGE_TYPE_PREKEY = 0
MESSAGE_TYPE_NORMAL = 1


@dataclass
class NormalMessage:
    """
    A Double Ratchet message.

    Attributes:
        version: Protocol version the sender used
        ratchet_key: Sender's current ratchet public key
        chain_index: Index of the message in the sending chain
        previous_chain_length: Length of the sender's previous sending chain
        ciphertext: nonce + AES-GCM ciphertext + tag
    """
    version: int
    ratchet_key: bytes
    chain_index: int
    previous_chain_length: int
    ciphertext: bytes

    def header_bytes(self) -> bytes:
        """Header bytes authenticated together with the ciphertext"""
        return (
            self.version.to_bytes(4, "big")
            + self.ratchet_key
            + self.chain_index.to_bytes(4, "big")
            + self.previous_chain_length.to_bytes(4, "big")
        )

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'version': self.version,
            'ratchet_key': encode_b64(self.ratchet_key),
            'chain_index': self.chain_index,
            'previous_chain_length': self.previous_chain_length,
            'ciphertext': encode_b64(self.ciphertext)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'NormalMessage':
        """Create from dictionary"""
        try:
            return cls(
                version=_require_int(data['version']),
                ratchet_key=decode_public_key(data['ratchet_key']),
                chain_index=_require_int(data['chain_index']),
                previous_chain_length=_require_int(data['previous_chain_length']),
                ciphertext=decode_b64(data['ciphertext'])
            )
        except (KeyError, TypeError) as e:
            raise CryptoError(f"Malformed message: {e!r}")


@dataclass
class PreKeyMessage:
    """
    First message(s) of a session, carrying what the recipient needs to derive it.

    Attributes:
        one_time_key: Recipient's one-time key the sender consumed
        base_key: Sender's ephemeral public key
        identity_key: Sender's long-term identity public key
        message: The enclosed ratchet message
    """
    one_time_key: bytes
    base_key: bytes
    identity_key: bytes
    message: NormalMessage

    @property
    def version(self) -> int:
        return self.message.version

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'version': self.version,
            'one_time_key': encode_b64(self.one_time_key),
            'base_key': encode_b64(self.base_key),
            'identity_key': encode_b64(self.identity_key),
            'message': self.message.to_dict()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PreKeyMessage':
        """Create from dictionary"""
        try:
            message = NormalMessage.from_dict(data['message'])
            if data.get('version', message.version) != message.version:
                raise CryptoError("Pre-key message version does not match the enclosed message")
            return cls(
                one_time_key=decode_public_key(data['one_time_key']),
                base_key=decode_public_key(data['base_key']),
                identity_key=decode_public_key(data['identity_key']),
                message=message
            )
        except (KeyError, TypeError) as e:
            raise CryptoError(f"Malformed pre-key message: {e!r}")


RatchetMessage = Union[NormalMessage, PreKeyMessage]


def message_to_payload(message: RatchetMessage) -> Dict:
    """Wrap a message into its typed wire payload"""
    if isinstance(message, PreKeyMessage):
        return {'type': MESSAGE_TYPE_PREKEY, 'body': message.to_dict()}
    return {'type': MESSAGE_TYPE_NORMAL, 'body': message.to_dict()}


def payload_to_message(payload: Any) -> RatchetMessage:
    """
    Parse a wire payload into a message.

    Raises:
        CryptoError: If the payload is not a well-formed ratchet message
    """
    if not isinstance(payload, dict) or not isinstance(payload.get('body'), dict):
        raise CryptoError("Payload is not a ratchet message")

    message_type = payload.get('type')
    if message_type == MESSAGE_TYPE_PREKEY and not isinstance(message_type, bool):
        return PreKeyMessage.from_dict(payload['body'])
    if message_type == MESSAGE_TYPE_NORMAL and not isinstance(message_type, bool):
        return NormalMessage.from_dict(payload['body'])
    raise CryptoError(f"Unknown message type: {message_type!r}")


def _require_int(value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value < 2 ** 32:
        raise CryptoError(f"Expected a 32-bit unsigned integer, got {value!r}")
    return value
