"""
Message routing between the application, the sessions and the relay.

Outbound, :meth:`MessageRouter.send_to` turns one plaintext into a batch with
one entry per recipient. Inbound, :meth:`MessageRouter.run` consumes the
relay's events one at a time, hands plaintexts to a bounded delivery queue and
acknowledges every processed batch with its highest sequence number.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from .envelope import InboundEnvelope, PayloadKind, classify, parse_batch
from .errors import MissingSessionError, ProtocolError, TransportError
from .transport import Event, MessagesReceived, OneTimeKeysRequested

logger = logging.getLogger(__name__)

Delivery = Tuple[str, bytes]


class MessageRouter:
    """
    Outbound batching and inbound dispatch for one device.
    """

    def __init__(self, identity, sessions, mailbox, transport,
                 delivery: "asyncio.Queue[Delivery]", one_time_key_batch: int = 10):
        """
        Args:
            identity: IdentityManager of this device
            sessions: SessionManager
            mailbox: SelfMailbox
            transport: Relay transport
            delivery: Bounded queue receiving ``(sender_id, plaintext)`` pairs
            one_time_key_batch: Keys generated per one-time key request
        """
        self.identity = identity
        self.sessions = sessions
        self.mailbox = mailbox
        self.transport = transport
        self.delivery = delivery
        self.one_time_key_batch = one_time_key_batch
        self.watermark: Optional[int] = None

    @property
    def device_id(self) -> str:
        return self.identity.device_id

    async def send_to(self, peer_ids: Iterable[str], plaintext: bytes):
        """
        Send a plaintext to every listed device in one relay batch.

        Our own device id stores the plaintext in the self-mailbox and sends
        only its sequence number. Any failure fails the whole send.
        """
        batch: List[Dict] = []
        for peer_id in peer_ids:
            if peer_id == self.device_id:
                seq = self.mailbox.enqueue(plaintext)
                batch.append({"deviceId": peer_id, "payload": seq})
                continue

            payload = await self.sessions.encrypt_for(peer_id, plaintext)
            batch.append({"deviceId": peer_id, "payload": payload})

        await self.transport.post_batch(batch)
        logger.debug("Sent batch with %d entries", len(batch))

    async def handle_event(self, event: Event):
        if isinstance(event, OneTimeKeysRequested):
            await self.identity.refresh_one_time_keys(self.transport, self.one_time_key_batch)
        elif isinstance(event, MessagesReceived):
            await self.handle_messages(event.payload)

    async def handle_messages(self, raw_batch) -> Optional[int]:
        """
        Process one batch of envelopes and acknowledge it.

        Messages that cannot be decrypted are logged and skipped. Local
        storage faults abort the batch before it is acknowledged.

        Returns:
            The acknowledged sequence number, None for an empty batch
        """
        try:
            envelopes = parse_batch(raw_batch)
        except ProtocolError as e:
            logger.warning("Dropping message batch: %s", e)
            return None

        max_seq_id: Optional[int] = None
        for envelope in envelopes:
            max_seq_id = envelope.seq_id if max_seq_id is None else max(max_seq_id, envelope.seq_id)
            try:
                await self._dispatch(envelope)
            except MissingSessionError as e:
                logger.info("Dropping message %d: %s", envelope.seq_id, e)
            except ProtocolError as e:
                logger.warning("Skipping message %d from %s: %s", envelope.seq_id, envelope.sender[:12], e)

        if max_seq_id is None:
            return None

        await self.transport.acknowledge(max_seq_id)
        if self.watermark is None or max_seq_id > self.watermark:
            self.watermark = max_seq_id
        return max_seq_id

    async def _dispatch(self, envelope: InboundEnvelope):
        payload = classify(envelope, self.device_id)
        if payload.kind is PayloadKind.SELF_SEQUENCE:
            plaintext = self.mailbox.take(payload.sequence)
        else:
            plaintext = await self.sessions.decrypt_from(envelope.sender, payload.message)
        await self.delivery.put((envelope.sender, plaintext))

    async def run(self):
        """
        Consume relay events until the subscription ends.

        Relay failures while handling an event are logged and the loop goes
        on; storage faults and a broken subscription end it.
        """
        async for event in self.transport.events():
            try:
                await self.handle_event(event)
            except TransportError as e:
                logger.error("Handling %s failed: %s", type(event).__name__, e)
