"""
The device identity and its one-time keys.

All access to the :class:`~e2ecrypto.Account` goes through one lock: key
generation, publication and consumption by inbound sessions must never
interleave.
"""

import asyncio
import logging

from e2ecrypto import Account, CryptoError, InboundCreationResult, PreKeyMessage, Session, SessionConfig

from .errors import ProtocolError, StorageError

logger = logging.getLogger(__name__)

ACCOUNT_KEY = "account"


class IdentityManager:
    """
    Serialized access to the local account, persisted after every mutation.
    """

    def __init__(self, account: Account, store):
        self.account = account
        self.store = store
        self.lock = asyncio.Lock()
        self.device_id = account.curve25519_key_base64()

    @classmethod
    def load_or_create(cls, store) -> 'IdentityManager':
        """
        Load the persisted account, or create and persist a new one.

        Raises:
            StorageError: If a newly created account cannot be persisted
        """
        account = None
        try:
            pickled = store.get_item(ACCOUNT_KEY)
            if pickled is not None:
                account = Account.from_pickle(pickled)
        except (StorageError, CryptoError) as e:
            logger.warning("Could not load the stored account, creating a new one: %s", e)

        if account is None:
            account = Account()
            store.set_item(ACCOUNT_KEY, account.pickle())
            logger.info("Created new identity %s", account.curve25519_key_base64())

        return cls(account, store)

    def _persist(self):
        self.store.set_item(ACCOUNT_KEY, self.account.pickle())

    async def refresh_one_time_keys(self, transport, count: int):
        """
        Generate ``count`` one-time keys and publish every unpublished key.

        Keys are marked published only after the relay accepted them, so a
        failed attempt is repeated with the same keys next time.

        Raises:
            TransportError: If publishing fails
        """
        async with self.lock:
            self.account.generate_one_time_keys(count)
            self._persist()

            one_time_keys = self.account.one_time_keys()
            await transport.publish_one_time_keys(one_time_keys)

            self.account.mark_keys_as_published()
            self._persist()
        logger.info("Published %d one-time keys", len(one_time_keys))

    async def create_outbound_session(self, peer_identity_key: bytes, peer_one_time_key: bytes,
                                      config: SessionConfig = SessionConfig()) -> Session:
        async with self.lock:
            try:
                return self.account.create_outbound_session(peer_identity_key, peer_one_time_key, config)
            except CryptoError as e:
                raise ProtocolError(str(e)) from e

    async def create_inbound_session(self, peer_identity_key: bytes,
                                     message: PreKeyMessage) -> InboundCreationResult:
        """
        Establish a session from a pre-key message, consuming one of our one-time keys.

        Raises:
            ProtocolError: Unknown or consumed one-time key, or undecryptable message
        """
        async with self.lock:
            try:
                result = self.account.create_inbound_session(peer_identity_key, message)
            except CryptoError as e:
                raise ProtocolError(str(e)) from e
            self._persist()
        return result
