"""
Client core for end-to-end encrypted messaging through a relay.
"""

from .client import ChatClient
from .config import ClientConfig
from .errors import (
    ClientError,
    StorageError,
    ProtocolError,
    TransportError,
    MissingSessionError,
    MissingMailboxItemError
)
from .identity import IdentityManager
from .mailbox import SelfMailbox
from .router import MessageRouter
from .sessions import SessionManager
from .storage import MemoryStore, SqliteStore
from .transport import MessagesReceived, OneTimeKeysRequested, RelayTransport

__all__ = [
    'ChatClient',
    'ClientConfig',
    'ClientError',
    'StorageError',
    'ProtocolError',
    'TransportError',
    'MissingSessionError',
    'MissingMailboxItemError',
    'IdentityManager',
    'SelfMailbox',
    'MessageRouter',
    'SessionManager',
    'MemoryStore',
    'SqliteStore',
    'MessagesReceived',
    'OneTimeKeysRequested',
    'RelayTransport'
]
