"""
Tests for the key-value stores and the self-mailbox.
"""

import pytest

from e2eclient.errors import MissingMailboxItemError, StorageError
from e2eclient.mailbox import SelfMailbox
from e2eclient.storage import MemoryStore, SqliteStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Both store implementations"""
    if request.param == "memory":
        yield MemoryStore()
    else:
        sqlite_store = SqliteStore(tmp_path / "storage.db")
        yield sqlite_store
        sqlite_store.close()


def test_get_set_delete(store):
    """Values round trip as JSON"""
    assert store.get_item("account") is None
    assert store.get_item("_local_seq", 1) == 1

    store.set_item("session/abc", {"root_key": "00", "count": 3})
    assert store.get_item("session/abc") == {"root_key": "00", "count": 3}

    store.set_item("session/abc", {"count": 4})
    assert store.get_item("session/abc") == {"count": 4}

    store.delete_item("session/abc")
    assert store.get_item("session/abc") is None
    store.delete_item("session/abc")


def test_unserializable_value(store):
    with pytest.raises(StorageError):
        store.set_item("bad", b"raw bytes")


def test_transaction_rollback(store):
    """Writes inside a failed transaction are discarded"""
    store.set_item("_local_seq", 1)

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.set_item("_local_seq", 2)
            store.set_item("_self_items/1", "aGk")
            raise RuntimeError("crash")

    assert store.get_item("_local_seq") == 1
    assert store.get_item("_self_items/1") is None

    with store.transaction():
        with store.transaction():
            store.set_item("_local_seq", 5)
    assert store.get_item("_local_seq") == 5


def test_sqlite_persists_across_reopen(tmp_path):
    path = tmp_path / "storage.db"
    first = SqliteStore(path)
    first.set_item("account", {"identity_private": "ab"})
    first.close()

    second = SqliteStore(path)
    assert second.get_item("account") == {"identity_private": "ab"}
    second.close()


def test_sqlite_encryption(tmp_path):
    """Values are unreadable without the passphrase"""
    path = tmp_path / "storage.db"
    encrypted = SqliteStore(path, passphrase="correct horse")
    encrypted.set_item("session/peer", {"secret": "value"})
    raw = encrypted.db.execute("SELECT value FROM items WHERE key = ?", ("session/peer",)).fetchone()[0]
    assert b"secret" not in raw, "Value stored in clear"
    encrypted.close()

    reopened = SqliteStore(path, passphrase="correct horse")
    assert reopened.get_item("session/peer") == {"secret": "value"}
    reopened.close()

    with pytest.raises(StorageError):
        SqliteStore(path, passphrase="wrong")


def test_mailbox_sequence(store):
    """Sequence numbers start at 1 and are never reused"""
    mailbox = SelfMailbox(store)
    assert mailbox.enqueue(b"one") == 1
    assert mailbox.enqueue(b"two") == 2

    assert mailbox.take(1) == b"one"
    assert mailbox.enqueue(b"three") == 3
    assert mailbox.take(3) == b"three"
    assert mailbox.take(2) == b"two"


def test_mailbox_take_is_exactly_once(store):
    mailbox = SelfMailbox(store)
    seq = mailbox.enqueue(b"\x00\xffbinary")
    assert mailbox.take(seq) == b"\x00\xffbinary"

    with pytest.raises(MissingMailboxItemError) as excinfo:
        mailbox.take(seq)
    assert excinfo.value.seq == seq
