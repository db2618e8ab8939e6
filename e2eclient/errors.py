"""
Exceptions raised by the messaging client.
"""


class ClientError(Exception):
    """Base exception for client errors"""
    pass


class StorageError(ClientError):
    """Persisted read, write or transaction failure"""
    pass


class ProtocolError(ClientError):
    """Malformed ciphertext, unknown one-time key or undecodable envelope"""
    pass


class TransportError(ClientError):
    """Network or relay failure"""
    pass


class MissingSessionError(ClientError):
    """A normal message arrived from a peer we have no session with"""

    def __init__(self, peer_id: str):
        super().__init__(f"No session with {peer_id}")
        self.peer_id = peer_id


class MissingMailboxItemError(ClientError):
    """A self-addressed message refers to a mailbox item that does not exist"""

    def __init__(self, seq: int):
        super().__init__(f"Self-mailbox item {seq} is missing")
        self.seq = seq
