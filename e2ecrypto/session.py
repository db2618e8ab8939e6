"""
Pairwise ratchet sessions.

A :class:`Session` wraps a :class:`DoubleRatchet` with the data that ties it to
one peer: the associated data binding both identity keys, a session id, and,
for sessions we initiated, the handshake keys to repeat in every message until
the peer has answered.
"""

import hashlib
from typing import Dict, Optional
from dataclasses import dataclass

from .double_ratchet import DoubleRatchet
from .messages import NormalMessage, PreKeyMessage, RatchetMessage
from .primitives import CryptoError, encode_b64, decode_b64


@dataclass(frozen=True)
class SessionConfig:
    """
    Protocol parameters of a session.

    Attributes:
        version: Message format version written into every message
        max_skip: Maximum number of message keys skipped in one chain
    """
    version: int = 2
    max_skip: int = DoubleRatchet.MAX_SKIP


def session_id_for(identity_key: bytes, base_key: bytes, one_time_key: bytes) -> str:
    """Session id derived from the initiator's handshake keys"""
    return encode_b64(hashlib.sha256(identity_key + base_key + one_time_key).digest())


@dataclass
class PreKeyInfo:
    """Handshake keys an initiator repeats until the session is confirmed"""
    one_time_key: bytes
    base_key: bytes
    identity_key: bytes


class Session:
    """
    Ratchet session with a single peer.
    """

    def __init__(self, ratchet: DoubleRatchet, session_id: str, associated_data: bytes,
                 prekey: Optional[PreKeyInfo] = None):
        """
        Args:
            ratchet: Initialized Double Ratchet
            session_id: Id shared by both ends of the session
            associated_data: Initiator identity key followed by responder identity key
            prekey: Handshake keys, only for sessions we initiated
        """
        self.ratchet = ratchet
        self.session_id = session_id
        self.associated_data = associated_data
        self.prekey = prekey

    def matches(self, message: PreKeyMessage) -> bool:
        """Whether a pre-key message belongs to this session"""
        return self.session_id == session_id_for(
            message.identity_key, message.base_key, message.one_time_key
        )

    def encrypt(self, plaintext: bytes) -> RatchetMessage:
        """
        Encrypt a message, as a pre-key message while the peer has not answered yet.
        """
        message = self.ratchet.encrypt(plaintext, self.associated_data)
        if self.prekey is None:
            return message
        return PreKeyMessage(
            one_time_key=self.prekey.one_time_key,
            base_key=self.prekey.base_key,
            identity_key=self.prekey.identity_key,
            message=message
        )

    def decrypt(self, message: RatchetMessage) -> bytes:
        """
        Decrypt a message received on this session.

        Raises:
            CryptoError: If the message does not belong here or fails to decrypt
        """
        if isinstance(message, PreKeyMessage):
            if not self.matches(message):
                raise CryptoError("Pre-key message belongs to another session")
            message = message.message
        if not isinstance(message, NormalMessage):
            raise CryptoError("Not a ratchet message")

        plaintext = self.ratchet.decrypt(message, self.associated_data)
        self.prekey = None
        return plaintext

    def pickle(self) -> Dict:
        """Serialize the session into a JSON-compatible dictionary"""
        return {
            'session_id': self.session_id,
            'associated_data': encode_b64(self.associated_data),
            'prekey': {
                'one_time_key': encode_b64(self.prekey.one_time_key),
                'base_key': encode_b64(self.prekey.base_key),
                'identity_key': encode_b64(self.prekey.identity_key)
            } if self.prekey else None,
            'ratchet': self.ratchet.export_state()
        }

    @classmethod
    def from_pickle(cls, data: Dict) -> 'Session':
        """
        Restore a session from :meth:`pickle` output.

        Raises:
            CryptoError: If the data is not a session
        """
        try:
            prekey_data = data['prekey']
            prekey = PreKeyInfo(
                one_time_key=decode_b64(prekey_data['one_time_key']),
                base_key=decode_b64(prekey_data['base_key']),
                identity_key=decode_b64(prekey_data['identity_key'])
            ) if prekey_data else None
            return cls(
                ratchet=DoubleRatchet.import_state(data['ratchet']),
                session_id=data['session_id'],
                associated_data=decode_b64(data['associated_data']),
                prekey=prekey
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CryptoError(f"Corrupted session: {e!r}")
