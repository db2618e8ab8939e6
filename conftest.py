"""
Shared fixtures: clients wired to an in-process relay.
"""

import asyncio
import json
from typing import Dict, List

import pytest

from e2eclient.client import ChatClient
from e2eclient.config import ClientConfig
from e2eclient.errors import TransportError
from e2eclient.storage import MemoryStore
from e2erelay.state import RelayState


class InProcessTransport:
    """
    Transport talking directly to a RelayState, with the same JSON round trip
    a payload makes over the network. Every call yields to the event loop once,
    like a network round trip would.
    """

    def __init__(self, relay: RelayState):
        self.relay = relay
        self.device_id = None
        self.fail_publish = False
        self.fail_post = False
        self.fetched: List[str] = []
        self.posted: List[List[Dict]] = []
        self.acknowledged: List[int] = []
        self.pushed_events: list = []

    async def fetch_one_time_key(self, peer_id: str) -> str:
        await asyncio.sleep(0)
        self.fetched.append(peer_id)
        otkey = self.relay.take_one_time_key(peer_id)
        if otkey is None:
            raise TransportError("GET /devices/otkey failed with status 404")
        return otkey

    async def publish_one_time_keys(self, one_time_keys: Dict[str, str]):
        await asyncio.sleep(0)
        if self.fail_publish:
            raise TransportError("POST /self/otkeys failed with status 500")
        self.relay.add_one_time_keys(self.device_id, json.loads(json.dumps(one_time_keys)))

    async def post_batch(self, batch: List[Dict]):
        await asyncio.sleep(0)
        if self.fail_post:
            raise TransportError("POST /message failed with status 500")
        batch = json.loads(json.dumps(batch))
        self.posted.append(batch)
        for entry in batch:
            self.relay.enqueue(entry["deviceId"], self.device_id, entry["payload"])

    async def acknowledge(self, seq_id: int):
        await asyncio.sleep(0)
        self.acknowledged.append(seq_id)
        self.relay.prune(self.device_id, seq_id)

    async def events(self):
        for event in self.pushed_events:
            yield event


@pytest.fixture
def relay():
    return RelayState()


@pytest.fixture
def make_client(relay):
    """Factory for clients sharing one relay"""

    def _make(store=None) -> ChatClient:
        transport = InProcessTransport(relay)
        client = ChatClient(
            ClientConfig(delivery_queue_size=100),
            store=store if store is not None else MemoryStore(),
            transport=transport
        )
        transport.device_id = client.device_id
        return client

    return _make


def drain(client: ChatClient) -> list:
    """Everything currently waiting in a client's delivery queue"""
    delivered = []
    while not client.delivery.empty():
        delivered.append(client.delivery.get_nowait())
    return delivered


async def receive_pending(client: ChatClient, relay: RelayState) -> list:
    """Process the client's queued mail and return what was delivered"""
    await client.router.handle_messages(relay.pending(client.device_id))
    return drain(client)
