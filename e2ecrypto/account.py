"""
Long-term identity and one-time pre-keys.

The :class:`Account` owns the device's Curve25519 identity key and a bounded
pool of one-time keys. Sessions are established with a triple Diffie-Hellman
handshake:

    initiator:  DH(IA, OB) || DH(EA, IB) || DH(EA, OB)
    responder:  DH(OB, IA) || DH(IB, EA) || DH(OB, EA)

where ``I`` are identity keys, ``E`` the initiator's ephemeral base key and
``O`` the responder's one-time key.
"""

from collections import OrderedDict
from typing import Dict, NamedTuple, Optional
from dataclasses import dataclass
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .double_ratchet import DoubleRatchet
from .messages import PreKeyMessage
from .session import PreKeyInfo, Session, SessionConfig, session_id_for
from .primitives import (
    generate_dh_keypair,
    dh_exchange,
    kdf_handshake,
    serialize_public_key,
    deserialize_public_key,
    serialize_private_key,
    deserialize_private_key,
    encode_b64,
    CryptoError
)


@dataclass
class OneTimeKey:
    """
    A single-use pre-key.

    Attributes:
        private_key: X25519 private key
        published: Whether the public half was uploaded to the relay
    """
    private_key: X25519PrivateKey
    published: bool = False

    @property
    def public_key(self) -> bytes:
        return serialize_public_key(self.private_key.public_key())


class InboundCreationResult(NamedTuple):
    session: Session
    plaintext: bytes


class Account:
    """
    Identity key pair plus the one-time key pool.
    """

    MAX_ONE_TIME_KEYS = 100

    def __init__(self, identity_private: Optional[X25519PrivateKey] = None):
        """
        Args:
            identity_private: Existing identity key, a new one is generated if omitted
        """
        if identity_private is None:
            identity_private, _ = generate_dh_keypair()
        self.identity_private = identity_private
        # key id -> key, oldest first
        self.one_time_keys_pool: 'OrderedDict[int, OneTimeKey]' = OrderedDict()
        self.next_key_id = 0

    @property
    def identity_key(self) -> bytes:
        """Public identity key (32 bytes)"""
        return serialize_public_key(self.identity_private.public_key())

    def curve25519_key_base64(self) -> str:
        return encode_b64(self.identity_key)

    def generate_one_time_keys(self, count: int):
        """
        Generate new one-time keys, dropping the oldest ones beyond the pool limit.

        Args:
            count: Number of keys to generate
        """
        if count < 0:
            raise ValueError("count must not be negative")

        for _ in range(count):
            private_key, _ = generate_dh_keypair()
            self.one_time_keys_pool[self.next_key_id] = OneTimeKey(private_key)
            self.next_key_id += 1

        while len(self.one_time_keys_pool) > self.MAX_ONE_TIME_KEYS:
            self.one_time_keys_pool.popitem(last=False)

    def one_time_keys(self) -> Dict[str, str]:
        """
        Unpublished one-time keys.

        Returns:
            Mapping of base64 key id to base64 public key
        """
        return {
            encode_b64(key_id.to_bytes(8, "big")): encode_b64(key.public_key)
            for key_id, key in self.one_time_keys_pool.items()
            if not key.published
        }

    def mark_keys_as_published(self):
        for key in self.one_time_keys_pool.values():
            key.published = True

    def _find_one_time_key(self, public_key: bytes) -> Optional[int]:
        for key_id, key in self.one_time_keys_pool.items():
            if key.public_key == public_key:
                return key_id
        return None

    def create_outbound_session(self, identity_key: bytes, one_time_key: bytes,
                                config: SessionConfig = SessionConfig()) -> Session:
        """
        Derive a session towards a peer from its identity key and one of its one-time keys.

        Args:
            identity_key: Peer's public identity key
            one_time_key: Peer's one-time key fetched from the relay
            config: Protocol parameters

        Returns:
            A session whose messages are pre-key messages until the peer answers
        """
        base_private, base_public = generate_dh_keypair()
        peer_identity = deserialize_public_key(identity_key)
        peer_one_time = deserialize_public_key(one_time_key)

        shared_secret = (
            dh_exchange(self.identity_private, peer_one_time)
            + dh_exchange(base_private, peer_identity)
            + dh_exchange(base_private, peer_one_time)
        )
        root_key, chain_key = kdf_handshake(shared_secret)

        base_key = serialize_public_key(base_public)
        ratchet = DoubleRatchet.initialize_sender(
            root_key, chain_key, version=config.version, max_skip=config.max_skip
        )
        return Session(
            ratchet=ratchet,
            session_id=session_id_for(self.identity_key, base_key, one_time_key),
            associated_data=self.identity_key + identity_key,
            prekey=PreKeyInfo(
                one_time_key=one_time_key,
                base_key=base_key,
                identity_key=self.identity_key
            )
        )

    def create_inbound_session(self, identity_key: bytes, message: PreKeyMessage,
                               config: SessionConfig = SessionConfig()) -> InboundCreationResult:
        """
        Derive a session from a received pre-key message and decrypt it.

        The referenced one-time key is consumed only if the message decrypts.

        Raises:
            CryptoError: Unknown or consumed one-time key, identity mismatch or bad ciphertext
        """
        if message.identity_key != identity_key:
            raise CryptoError("Pre-key message identity key does not match the sender")

        key_id = self._find_one_time_key(message.one_time_key)
        if key_id is None:
            raise CryptoError("Pre-key message references an unknown one-time key")
        one_time_private = self.one_time_keys_pool[key_id].private_key

        peer_identity = deserialize_public_key(identity_key)
        base_key = deserialize_public_key(message.base_key)
        shared_secret = (
            dh_exchange(one_time_private, peer_identity)
            + dh_exchange(self.identity_private, base_key)
            + dh_exchange(one_time_private, base_key)
        )
        root_key, chain_key = kdf_handshake(shared_secret)

        ratchet = DoubleRatchet.initialize_receiver(
            root_key, chain_key, message.message.ratchet_key,
            version=config.version, max_skip=config.max_skip
        )
        session = Session(
            ratchet=ratchet,
            session_id=session_id_for(identity_key, message.base_key, message.one_time_key),
            associated_data=identity_key + self.identity_key
        )
        plaintext = session.decrypt(message)

        del self.one_time_keys_pool[key_id]
        return InboundCreationResult(session, plaintext)

    def pickle(self) -> Dict:
        """Serialize the account into a JSON-compatible dictionary"""
        return {
            'identity_private': serialize_private_key(self.identity_private).hex(),
            'next_key_id': self.next_key_id,
            'one_time_keys': [
                {
                    'id': key_id,
                    'private': serialize_private_key(key.private_key).hex(),
                    'published': key.published
                }
                for key_id, key in self.one_time_keys_pool.items()
            ]
        }

    @classmethod
    def from_pickle(cls, data: Dict) -> 'Account':
        """
        Restore an account from :meth:`pickle` output.

        Raises:
            CryptoError: If the data is not an account
        """
        try:
            account = cls(deserialize_private_key(bytes.fromhex(data['identity_private'])))
            account.next_key_id = data['next_key_id']
            for entry in data['one_time_keys']:
                account.one_time_keys_pool[entry['id']] = OneTimeKey(
                    private_key=deserialize_private_key(bytes.fromhex(entry['private'])),
                    published=entry['published']
                )
            return account
        except (KeyError, TypeError, ValueError) as e:
            raise CryptoError(f"Corrupted account: {e!r}")

