"""
Relay state: one-time key pools and per-device mailboxes.

Kept in memory. The relay only ever handles ciphertext and self-mailbox
sequence numbers.
"""

from collections import OrderedDict, defaultdict
from typing import Any, Dict, List, Optional


class RelayState:
    """
    One-time keys published by devices and mail waiting for them.
    """

    ONE_TIME_KEY_LOW_WATER = 5  # ask a device for more keys below this

    def __init__(self):
        self.one_time_keys: Dict[str, 'OrderedDict[str, str]'] = defaultdict(OrderedDict)
        self.mailboxes: Dict[str, List[Dict]] = defaultdict(list)
        self.next_seq_id: Dict[str, int] = defaultdict(lambda: 1)

    def add_one_time_keys(self, device_id: str, keys: Dict[str, str]) -> int:
        """
        Store published one-time keys. Re-published key ids replace their old value.

        Returns:
            Number of keys now available for the device
        """
        pool = self.one_time_keys[device_id]
        pool.update(keys)
        return len(pool)

    def take_one_time_key(self, device_id: str) -> Optional[str]:
        """Claim the oldest unused one-time key of a device"""
        pool = self.one_time_keys.get(device_id)
        if not pool:
            return None
        _, key = pool.popitem(last=False)
        return key

    def one_time_key_count(self, device_id: str) -> int:
        return len(self.one_time_keys.get(device_id, ()))

    def needs_one_time_keys(self, device_id: str) -> bool:
        return self.one_time_key_count(device_id) < self.ONE_TIME_KEY_LOW_WATER

    def enqueue(self, recipient: str, sender: str, payload: Any) -> Dict:
        """
        Append a message to a recipient's mailbox.

        Returns:
            The envelope, with the recipient's next sequence number
        """
        seq_id = self.next_seq_id[recipient]
        self.next_seq_id[recipient] = seq_id + 1
        envelope = {"encPayload": payload, "sender": sender, "seqID": seq_id}
        self.mailboxes[recipient].append(envelope)
        return envelope

    def pending(self, device_id: str) -> List[Dict]:
        return list(self.mailboxes.get(device_id, ()))

    def prune(self, device_id: str, seq_id: int) -> int:
        """
        Delete every message up to and including ``seq_id``.

        Returns:
            Number of deleted messages
        """
        mailbox = self.mailboxes.get(device_id, [])
        kept = [envelope for envelope in mailbox if envelope["seqID"] > seq_id]
        self.mailboxes[device_id] = kept
        return len(mailbox) - len(kept)
