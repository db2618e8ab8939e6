"""
Double Ratchet Algorithm

Implements the Double Ratchet algorithm for end-to-end encrypted messaging with
forward secrecy and break-in recovery. This algorithm combines a DH ratchet for
forward secrecy with a symmetric key ratchet for immediate key updates.

The initiator starts with a sending chain derived from the handshake; the
responder starts with the matching receiving chain and creates its first
sending chain lazily, on its first encryption.
"""

import copy
from typing import Dict, Optional, Tuple
from dataclasses import dataclass, field

from .messages import NormalMessage
from .primitives import (
    generate_dh_keypair,
    dh_exchange,
    kdf_root,
    kdf_chain,
    encrypt_message,
    decrypt_message,
    serialize_public_key,
    deserialize_public_key,
    serialize_private_key,
    deserialize_private_key,
    CryptoError
)


@dataclass
class RatchetState:
    """
    State of the Double Ratchet algorithm.

    Attributes:
        root_key: Root key for DH ratchet
        sending_chain_key: Current sending chain key
        receiving_chain_key: Current receiving chain key
        dh_private: Our current DH ratchet private key
        dh_public: Our current DH ratchet public key
        dh_remote_public: Remote party's current DH ratchet public key
        send_count: Number of messages sent in current chain
        recv_count: Number of messages received in current chain
        prev_send_count: Messages sent in previous chain
        skipped_keys: Dictionary of skipped message keys for out-of-order messages
    """
    root_key: bytes
    sending_chain_key: Optional[bytes] = None
    receiving_chain_key: Optional[bytes] = None
    dh_private: Optional[bytes] = None  # Serialized private key
    dh_public: Optional[bytes] = None
    dh_remote_public: Optional[bytes] = None
    send_count: int = 0
    recv_count: int = 0
    prev_send_count: int = 0
    skipped_keys: Dict[Tuple[bytes, int], bytes] = field(default_factory=dict)


class DoubleRatchet:
    """
    Double Ratchet session for encrypted messaging.

    Provides forward secrecy and break-in recovery through:
    - DH ratchet: Updates DH keypair with each message exchange
    - Symmetric ratchet: Derives new chain keys for each message
    """

    MAX_SKIP = 1000  # Maximum number of message keys we'll skip and store

    def __init__(self, state: RatchetState, version: int = 2, max_skip: int = MAX_SKIP):
        self.state = state
        self.version = version
        self.max_skip = max_skip

    @classmethod
    def initialize_sender(cls, root_key: bytes, chain_key: bytes, **kwargs) -> 'DoubleRatchet':
        """
        Initialize as the session initiator.

        Args:
            root_key: Root key from the handshake
            chain_key: First sending chain key from the handshake
        """
        private_key, public_key = generate_dh_keypair()
        state = RatchetState(
            root_key=root_key,
            sending_chain_key=chain_key,
            dh_private=serialize_private_key(private_key),
            dh_public=serialize_public_key(public_key)
        )
        return cls(state, **kwargs)

    @classmethod
    def initialize_receiver(cls, root_key: bytes, chain_key: bytes, remote_ratchet_key: bytes,
                            **kwargs) -> 'DoubleRatchet':
        """
        Initialize as the responder with the initiator's first ratchet key.

        Args:
            root_key: Root key from the handshake
            chain_key: The initiator's first sending chain key
            remote_ratchet_key: Ratchet public key carried by the first message
        """
        state = RatchetState(
            root_key=root_key,
            receiving_chain_key=chain_key,
            dh_remote_public=remote_ratchet_key
        )
        return cls(state, **kwargs)

    def _start_sending_chain(self):
        """Create a sending chain against the current remote ratchet key"""
        if self.state.dh_remote_public is None:
            raise CryptoError("Cannot encrypt without establishing session first")

        new_private, new_public = generate_dh_keypair()
        dh_output = dh_exchange(new_private, deserialize_public_key(self.state.dh_remote_public))

        self.state.dh_private = serialize_private_key(new_private)
        self.state.dh_public = serialize_public_key(new_public)
        self.state.root_key, self.state.sending_chain_key = kdf_root(self.state.root_key, dh_output)
        self.state.prev_send_count = self.state.send_count
        self.state.send_count = 0

    def _dh_ratchet_step(self, remote_public: bytes):
        """
        Perform a DH ratchet step.

        Args:
            remote_public: Remote party's public DH key
        """
        if self.state.dh_private is None:
            raise CryptoError("Unexpected ratchet key before our first message")

        # Update to received remote public key
        self.state.dh_remote_public = remote_public

        # Update root key and receiving chain
        private_key = deserialize_private_key(self.state.dh_private)
        dh_output = dh_exchange(private_key, deserialize_public_key(remote_public))
        self.state.root_key, self.state.receiving_chain_key = kdf_root(self.state.root_key, dh_output)
        self.state.recv_count = 0

        # New DH keypair and sending chain
        self._start_sending_chain()

    def encrypt(self, plaintext: bytes, associated_data: bytes = b"") -> NormalMessage:
        """
        Encrypt a message.

        Args:
            plaintext: Message to encrypt
            associated_data: Additional authenticated data

        Returns:
            The ratchet message carrying header and ciphertext
        """
        if self.state.sending_chain_key is None:
            self._start_sending_chain()

        # Derive message key from sending chain
        self.state.sending_chain_key, message_key = kdf_chain(
            self.state.sending_chain_key,
            b"MessageKeys"
        )

        message = NormalMessage(
            version=self.version,
            ratchet_key=self.state.dh_public,
            chain_index=self.state.send_count,
            previous_chain_length=self.state.prev_send_count,
            ciphertext=b""
        )
        message.ciphertext = encrypt_message(
            message_key, plaintext, associated_data + message.header_bytes()
        )

        self.state.send_count += 1
        return message

    def decrypt(self, message: NormalMessage, associated_data: bytes = b"") -> bytes:
        """
        Decrypt a message. The state is left untouched when decryption fails.

        Args:
            message: The ratchet message
            associated_data: Additional authenticated data

        Returns:
            Decrypted plaintext

        Raises:
            CryptoError: If decryption fails
        """
        if message.version != self.version:
            raise CryptoError(f"Unsupported message version {message.version}")

        snapshot = copy.deepcopy(self.state)
        try:
            return self._decrypt(message, associated_data + message.header_bytes())
        except CryptoError:
            self.state = snapshot
            raise

    def _decrypt(self, message: NormalMessage, associated_data: bytes) -> bytes:
        # Check if we've already skipped and stored this message key
        skipped_key = (message.ratchet_key, message.chain_index)
        if skipped_key in self.state.skipped_keys:
            message_key = self.state.skipped_keys.pop(skipped_key)
            return decrypt_message(message_key, message.ciphertext, associated_data)

        # Check if we need to perform DH ratchet step
        if self.state.dh_remote_public != message.ratchet_key:
            self._skip_message_keys(message.previous_chain_length)
            self._dh_ratchet_step(message.ratchet_key)
        elif message.chain_index < self.state.recv_count:
            raise CryptoError(f"Message key {message.chain_index} was already used")

        # Skip message keys if needed (for out-of-order delivery)
        self._skip_message_keys(message.chain_index)

        if self.state.receiving_chain_key is None:
            raise CryptoError("Receiving chain not initialized")

        self.state.receiving_chain_key, message_key = kdf_chain(
            self.state.receiving_chain_key,
            b"MessageKeys"
        )
        self.state.recv_count += 1

        return decrypt_message(message_key, message.ciphertext, associated_data)

    def _skip_message_keys(self, until: int):
        """
        Skip and store message keys for out-of-order messages.

        Args:
            until: Message number to skip until (exclusive)
        """
        if self.state.receiving_chain_key is None:
            return

        if self.state.recv_count + self.max_skip < until:
            raise CryptoError(f"Too many skipped messages: {until - self.state.recv_count}")

        while self.state.recv_count < until:
            self.state.receiving_chain_key, message_key = kdf_chain(
                self.state.receiving_chain_key,
                b"MessageKeys"
            )
            key = (self.state.dh_remote_public, self.state.recv_count)
            self.state.skipped_keys[key] = message_key
            self.state.recv_count += 1

    def export_state(self) -> Dict:
        """
        Export ratchet state for persistence.

        Returns:
            JSON-compatible dictionary of the state
        """
        def _hex(value: Optional[bytes]) -> Optional[str]:
            return value.hex() if value is not None else None

        return {
            'version': self.version,
            'max_skip': self.max_skip,
            'root_key': self.state.root_key.hex(),
            'sending_chain_key': _hex(self.state.sending_chain_key),
            'receiving_chain_key': _hex(self.state.receiving_chain_key),
            'dh_private': _hex(self.state.dh_private),
            'dh_public': _hex(self.state.dh_public),
            'dh_remote_public': _hex(self.state.dh_remote_public),
            'send_count': self.state.send_count,
            'recv_count': self.state.recv_count,
            'prev_send_count': self.state.prev_send_count,
            'skipped_keys': {
                f"{k[0].hex()}:{k[1]}": v.hex()
                for k, v in self.state.skipped_keys.items()
            }
        }

    @classmethod
    def import_state(cls, state_dict: Dict) -> 'DoubleRatchet':
        """
        Import ratchet state from persistence.

        Args:
            state_dict: Dictionary produced by :meth:`export_state`

        Returns:
            DoubleRatchet instance with restored state
        """
        def _bytes(value: Optional[str]) -> Optional[bytes]:
            return bytes.fromhex(value) if value is not None else None

        skipped_keys = {}
        for key_str, value_hex in state_dict.get('skipped_keys', {}).items():
            pub_hex, num_str = key_str.split(':')
            skipped_keys[(bytes.fromhex(pub_hex), int(num_str))] = bytes.fromhex(value_hex)

        state = RatchetState(
            root_key=bytes.fromhex(state_dict['root_key']),
            sending_chain_key=_bytes(state_dict['sending_chain_key']),
            receiving_chain_key=_bytes(state_dict['receiving_chain_key']),
            dh_private=_bytes(state_dict['dh_private']),
            dh_public=_bytes(state_dict['dh_public']),
            dh_remote_public=_bytes(state_dict['dh_remote_public']),
            send_count=state_dict['send_count'],
            recv_count=state_dict['recv_count'],
            prev_send_count=state_dict['prev_send_count'],
            skipped_keys=skipped_keys
        )
        return cls(state, version=state_dict.get('version', 2),
                   max_skip=state_dict.get('max_skip', cls.MAX_SKIP))
