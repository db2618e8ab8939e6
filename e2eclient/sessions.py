"""
Per-peer session management.

Each peer's session lives in the store under ``session/<peer-id>`` and is
loaded, used and saved again under that peer's lock, so two operations on the
same peer never work on diverging copies of the ratchet.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from e2ecrypto import (
    CryptoError,
    NormalMessage,
    PreKeyMessage,
    RatchetMessage,
    Session,
    SessionConfig,
    decode_public_key,
    message_to_payload,
)

from .errors import MissingSessionError, ProtocolError

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session/"


def session_key(peer_id: str) -> str:
    return f"{SESSION_PREFIX}{peer_id}"


def peer_identity_key(peer_id: str) -> bytes:
    """
    Identity key bytes of a device id.

    Raises:
        ProtocolError: If the id is not a base64 Curve25519 key
    """
    try:
        return decode_public_key(peer_id)
    except CryptoError as e:
        raise ProtocolError(f"Invalid device id {peer_id!r}: {e}") from e


class SessionManager:
    """
    Produces ready-to-use, persisted sessions for both directions.
    """

    def __init__(self, identity, store, transport, config: SessionConfig = SessionConfig()):
        self.identity = identity
        self.store = store
        self.transport = transport
        self.config = config
        # peer id -> (lock, number of tasks holding or awaiting it)
        self._locks: Dict[str, list] = {}

    @asynccontextmanager
    async def lock_for(self, peer_id: str) -> AsyncIterator[None]:
        """
        Hold the peer's lock. The entry is dropped once no task uses it.
        """
        entry = self._locks.setdefault(peer_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[peer_id]

    def load(self, peer_id: str) -> Optional[Session]:
        """
        Load a stored session.

        Raises:
            ProtocolError: If the stored blob is not a session
        """
        pickled = self.store.get_item(session_key(peer_id))
        if pickled is None:
            return None
        try:
            return Session.from_pickle(pickled)
        except CryptoError as e:
            raise ProtocolError(f"Stored session for {peer_id} is unusable: {e}") from e

    def save(self, peer_id: str, session: Session):
        self.store.set_item(session_key(peer_id), session.pickle())

    async def _acquire_outbound(self, peer_id: str) -> Session:
        session = self.load(peer_id)
        if session is not None:
            return session

        identity_key = peer_identity_key(peer_id)
        one_time_key_b64 = await self.transport.fetch_one_time_key(peer_id)
        try:
            one_time_key = decode_public_key(one_time_key_b64)
        except CryptoError as e:
            raise ProtocolError(f"Relay returned an invalid one-time key for {peer_id}: {e}") from e

        session = await self.identity.create_outbound_session(identity_key, one_time_key, self.config)
        self.save(peer_id, session)
        logger.info("Established outbound session with %s", peer_id[:12])
        return session

    async def encrypt_for(self, peer_id: str, plaintext: bytes) -> Dict:
        """
        Encrypt for a peer, establishing a session first if there is none.

        The advanced session is persisted before the payload is returned.

        Returns:
            The wire payload for the relay
        """
        async with self.lock_for(peer_id):
            session = await self._acquire_outbound(peer_id)
            message = session.encrypt(plaintext)
            self.save(peer_id, session)
        return message_to_payload(message)

    async def decrypt_from(self, peer_id: str, message: RatchetMessage) -> bytes:
        """
        Decrypt a message from a peer.

        A pre-key message installs a new session unless it belongs to the one
        already stored. The advanced session is persisted before the plaintext
        is returned.

        Raises:
            MissingSessionError: Normal message without a stored session
            ProtocolError: The sender is not a device id or the message cannot be decrypted
        """
        identity_key = peer_identity_key(peer_id)
        async with self.lock_for(peer_id):
            if isinstance(message, PreKeyMessage):
                session, plaintext = await self._decrypt_prekey(peer_id, identity_key, message)
            elif isinstance(message, NormalMessage):
                session = self.load(peer_id)
                if session is None:
                    raise MissingSessionError(peer_id)
                try:
                    plaintext = session.decrypt(message)
                except CryptoError as e:
                    raise ProtocolError(f"Cannot decrypt message from {peer_id}: {e}") from e
            else:
                raise ProtocolError("Not a ratchet message")
            self.save(peer_id, session)
        return plaintext

    async def _decrypt_prekey(self, peer_id: str, identity_key: bytes, message: PreKeyMessage):
        try:
            session = self.load(peer_id)
        except ProtocolError as e:
            logger.warning("Replacing unusable session: %s", e)
            session = None

        if session is not None and session.matches(message):
            try:
                return session, session.decrypt(message)
            except CryptoError as e:
                raise ProtocolError(f"Cannot decrypt message from {peer_id}: {e}") from e

        result = await self.identity.create_inbound_session(identity_key, message)
        logger.info("Established inbound session with %s", peer_id[:12])
        return result.session, result.plaintext
