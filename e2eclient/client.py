"""
Messaging client facade.

Wires storage, identity, sessions, self-mailbox, transport and router into a
single object the application talks to.
"""

import asyncio
import logging
from typing import AsyncIterator, Iterable, Optional, Union

from .config import ClientConfig
from .identity import IdentityManager
from .mailbox import SelfMailbox
from .router import Delivery, MessageRouter
from .sessions import SessionManager
from .storage import SqliteStore
from .transport import RelayTransport

logger = logging.getLogger(__name__)


class ChatClient:
    """
    End-to-end encrypted messaging client for one device.
    """

    def __init__(self, config: Optional[ClientConfig] = None, store=None, transport=None):
        """
        Initialize the client.

        Args:
            config: Settings, read from the environment when omitted
            store: Key-value store, a SqliteStore at ``config.storage_path`` when omitted
            transport: Relay transport, a RelayTransport for ``config.server_url`` when omitted
        """
        self.config = config or ClientConfig.from_env()
        self.store = store if store is not None else SqliteStore(self.config.storage_path, self.config.passphrase)
        self.identity = IdentityManager.load_or_create(self.store)
        self.transport = transport or RelayTransport(self.config.server_url, self.identity.device_id)
        self.sessions = SessionManager(self.identity, self.store, self.transport)
        self.mailbox = SelfMailbox(self.store)
        self.delivery: "asyncio.Queue[Delivery]" = asyncio.Queue(maxsize=self.config.delivery_queue_size)
        self.router = MessageRouter(
            self.identity,
            self.sessions,
            self.mailbox,
            self.transport,
            self.delivery,
            one_time_key_batch=self.config.one_time_key_batch
        )

    @property
    def device_id(self) -> str:
        return self.identity.device_id

    async def send_to(self, peer_ids: Iterable[str], message: Union[str, bytes]):
        if isinstance(message, str):
            message = message.encode()
        await self.router.send_to(list(peer_ids), message)

    async def run(self):
        """Process relay events until the connection ends"""
        await self.router.run()

    async def messages(self) -> AsyncIterator[Delivery]:
        """Yield ``(sender_id, plaintext)`` pairs as they are decrypted"""
        while True:
            yield await self.delivery.get()
            self.delivery.task_done()

    async def close(self):
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()
        self.store.close()
