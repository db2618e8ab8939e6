"""
Self-mailbox: local copies of messages a device addresses to itself.

The relay only ever sees the sequence number of a self-addressed message and
echoes it back, at which point the plaintext is taken out of the mailbox.
"""

import base64
import binascii
import logging

from .errors import MissingMailboxItemError, StorageError

logger = logging.getLogger(__name__)

_SEQ_KEY = "_local_seq"
_ITEM_PREFIX = "_self_items/"


class SelfMailbox:
    """
    Queue of own plaintexts keyed by a monotonic local sequence number.
    """

    def __init__(self, store):
        self.store = store

    def enqueue(self, plaintext: bytes) -> int:
        """
        Store a plaintext under the next sequence number.

        Returns:
            The sequence number to send to the relay
        """
        with self.store.transaction():
            seq = self.store.get_item(_SEQ_KEY, 1)
            self.store.set_item(_SEQ_KEY, seq + 1)
            self.store.set_item(f"{_ITEM_PREFIX}{seq}", base64.b64encode(plaintext).decode("ascii"))
        logger.debug("Queued self-mailbox item %d", seq)
        return seq

    def take(self, seq: int) -> bytes:
        """
        Read and delete a stored plaintext.

        Raises:
            MissingMailboxItemError: If nothing is stored under ``seq``
        """
        key = f"{_ITEM_PREFIX}{seq}"
        with self.store.transaction():
            item = self.store.get_item(key)
            if item is None:
                raise MissingMailboxItemError(seq)
            self.store.delete_item(key)
        try:
            return base64.b64decode(item, validate=True)
        except (binascii.Error, TypeError) as e:
            raise StorageError(f"Self-mailbox item {seq} is corrupted") from e
