"""
Client configuration.

Defaults can be overridden through environment variables, and the command
line overrides both.
"""

import os
from dataclasses import dataclass
from typing import Optional

from .storage import STORAGE_FILE

DEFAULT_SERVER_URL = "http://localhost:8080"
APP_STORAGE_FILE = "app.db"
ONE_TIME_KEY_BATCH = 10  # keys generated per addOtkeys request
DELIVERY_QUEUE_SIZE = 10


@dataclass
class ClientConfig:
    """
    Settings of a messaging client.

    Attributes:
        server_url: Base URL of the relay
        storage_path: Database holding keys, sessions and the self-mailbox
        app_storage_path: Database holding application data such as contacts
        passphrase: Encrypts both databases when set
        one_time_key_batch: One-time keys generated per refresh
        delivery_queue_size: Bound of the decrypted-message queue
    """
    server_url: str = DEFAULT_SERVER_URL
    storage_path: str = STORAGE_FILE
    app_storage_path: str = APP_STORAGE_FILE
    passphrase: Optional[str] = None
    one_time_key_batch: int = ONE_TIME_KEY_BATCH
    delivery_queue_size: int = DELIVERY_QUEUE_SIZE

    @classmethod
    def from_env(cls) -> 'ClientConfig':
        """Build a configuration from ``E2E_*`` environment variables"""
        return cls(
            server_url=os.environ.get("E2E_SERVER_URL", DEFAULT_SERVER_URL),
            storage_path=os.environ.get("E2E_STORAGE", STORAGE_FILE),
            app_storage_path=os.environ.get("E2E_APP_STORAGE", APP_STORAGE_FILE),
            passphrase=os.environ.get("E2E_PASSPHRASE") or None,
        )
