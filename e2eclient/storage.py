"""
Key-value storage for the messaging client.

Stores the identity, session states, the self-mailbox and application data as
JSON values under slash-delimited string keys. :class:`SqliteStore` persists
to disk and can encrypt every value with a key derived from a passphrase;
:class:`MemoryStore` keeps everything in memory.
"""

import os
import json
import sqlite3
import threading
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import StorageError

logger = logging.getLogger(__name__)

STORAGE_FILE = "storage.db"

_PASSPHRASE_CHECK = b"e2e-storage"


def _encode(value: Any) -> bytes:
    try:
        return json.dumps(value, separators=(",", ":")).encode()
    except (TypeError, ValueError) as e:
        raise StorageError(f"Value is not serializable: {e}") from e


def _decode(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except ValueError as e:
        raise StorageError(f"Stored value is corrupted: {e}") from e


class MemoryStore:
    """
    In-memory store with the same contract as :class:`SqliteStore`.
    """

    def __init__(self):
        self._items: Dict[str, bytes] = {}
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator['MemoryStore']:
        """All writes inside the block are discarded if it raises"""
        with self._lock:
            snapshot = dict(self._items)
            try:
                yield self
            except BaseException:
                self._items = snapshot
                raise

    def get_item(self, key: str, default: Any = None) -> Any:
        with self._lock:
            raw = self._items.get(key)
        return default if raw is None else _decode(raw)

    def set_item(self, key: str, value: Any):
        raw = _encode(value)
        with self._lock:
            self._items[key] = raw

    def delete_item(self, key: str):
        with self._lock:
            self._items.pop(key, None)

    def close(self):
        pass


class SqliteStore:
    """
    SQLite-backed store.

    Every write outside :meth:`transaction` is committed immediately. When a
    passphrase is given all values are encrypted with AES-256-GCM under a key
    derived from it.
    """

    def __init__(self, path: Union[str, Path] = STORAGE_FILE, passphrase: Optional[str] = None):
        """
        Initialize the store.

        Args:
            path: Database file
            passphrase: Optional passphrase for encryption at rest

        Raises:
            StorageError: If the database cannot be opened or the passphrase is wrong
        """
        self.db_path = Path(path)
        self.encryption_key: Optional[bytes] = None
        self._lock = threading.RLock()
        self._depth = 0

        try:
            self.db = sqlite3.connect(str(self.db_path), isolation_level=None, check_same_thread=False)
            self._init_database()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e

        if passphrase is not None:
            self.unlock(passphrase)

    def _init_database(self):
        """Initialize SQLite database"""
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS items (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL
            )
        """)

    def derive_key(self, passphrase: str, salt: bytes) -> bytes:
        """
        Derive encryption key from passphrase using PBKDF2.

        Args:
            passphrase: User's passphrase
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return kdf.derive(passphrase.encode())

    def unlock(self, passphrase: str):
        """
        Unlock storage with passphrase.

        Raises:
            StorageError: If the passphrase does not match the one the store was created with
        """
        salt = self._get_metadata("salt")
        if salt is None:
            salt = os.urandom(16)
            self.encryption_key = self.derive_key(passphrase, salt)
            with self.transaction():
                self._set_metadata("salt", salt)
                self._set_metadata("check", self._encrypt(_PASSPHRASE_CHECK))
            logger.debug("Initialized encrypted storage at %s", self.db_path)
            return

        key = self.derive_key(passphrase, salt)
        check = self._get_metadata("check")
        try:
            if check is None or AESGCM(key).decrypt(check[:12], check[12:], None) != _PASSPHRASE_CHECK:
                raise StorageError("Wrong passphrase")
        except InvalidTag:
            raise StorageError("Wrong passphrase")
        self.encryption_key = key

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        if not self.encryption_key:
            return data

        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        return nonce + aesgcm.encrypt(nonce, data, None)

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        if not self.encryption_key:
            return encrypted_data

        aesgcm = AESGCM(self.encryption_key)
        try:
            return aesgcm.decrypt(encrypted_data[:12], encrypted_data[12:], None)
        except InvalidTag as e:
            raise StorageError("Stored value failed authentication") from e

    def _execute(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self.db.execute(query, params)
        except sqlite3.Error as e:
            raise StorageError(f"Storage failure: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator['SqliteStore']:
        """
        Group reads and writes into one SQLite transaction.

        Nested blocks join the outermost transaction.
        """
        with self._lock:
            outer = self._depth == 0
            if outer:
                self._execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outer:
                    self._execute("ROLLBACK")
                raise
            self._depth -= 1
            if outer:
                self._execute("COMMIT")

    def get_item(self, key: str, default: Any = None) -> Any:
        """
        Read a value.

        Args:
            key: Item key
            default: Returned when the key does not exist
        """
        with self._lock:
            row = self._execute("SELECT value FROM items WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return _decode(self._decrypt(row[0]))

    def set_item(self, key: str, value: Any):
        """Write a JSON-serializable value"""
        raw = self._encrypt(_encode(value))
        with self._lock:
            self._execute("INSERT OR REPLACE INTO items (key, value) VALUES (?, ?)", (key, raw))

    def delete_item(self, key: str):
        with self._lock:
            self._execute("DELETE FROM items WHERE key = ?", (key,))

    def _get_metadata(self, key: str) -> Optional[bytes]:
        """Get metadata value"""
        with self._lock:
            row = self._execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def _set_metadata(self, key: str, value: bytes):
        with self._lock:
            self._execute("INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value))

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
