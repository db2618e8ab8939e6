"""
Connection to the relay server.

REST calls go through httpx; pushed events arrive over a WebSocket and are
exposed as an async iterator of typed events.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx
import websockets

from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OneTimeKeysRequested:
    """The relay asks for fresh one-time keys (``addOtkeys``)"""
    pass


@dataclass(frozen=True)
class MessagesReceived:
    """A batch of envelopes (``noiseMessage``)"""
    payload: Any


Event = Union[OneTimeKeysRequested, MessagesReceived]


def parse_event(frame: Union[str, bytes]) -> Optional[Event]:
    """
    Turn a pushed WebSocket frame into an event.

    Returns:
        The event, or None for frames that carry no event for us
    """
    try:
        data = json.loads(frame)
    except ValueError:
        logger.warning("Ignoring non-JSON frame from relay")
        return None
    if not isinstance(data, dict):
        return None

    event_type = data.get("type")
    if event_type == "addOtkeys":
        return OneTimeKeysRequested()
    if event_type == "noiseMessage":
        return MessagesReceived(data.get("data"))
    logger.debug("Ignoring relay frame of type %r", event_type)
    return None


class RelayTransport:
    """
    Authenticated access to the relay on behalf of one device.
    """

    def __init__(self, server_url: str, device_id: str, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the transport.

        Args:
            server_url: Base URL of the relay
            device_id: Our device id, used as bearer token
            http_client: Client to use instead of a new one
        """
        self.server_url = server_url.rstrip("/")
        self.ws_url = self.server_url.replace("http", "ws", 1) + "/ws"
        self.device_id = device_id
        self.http_client = http_client or httpx.AsyncClient()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http_client.request(
                method,
                f"{self.server_url}{path}",
                headers={"Authorization": f"Bearer {self.device_id}"},
                **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"{method} {path} failed with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e
        return response

    async def fetch_one_time_key(self, peer_id: str) -> str:
        """
        Claim one unused one-time key of a peer.

        Returns:
            The base64 one-time key
        """
        response = await self._request("GET", "/devices/otkey", params={"device_id": peer_id})
        try:
            return response.json()["otkey"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransportError(f"Malformed one-time key response for {peer_id[:12]}") from e

    async def publish_one_time_keys(self, one_time_keys: Dict[str, str]):
        await self._request("POST", "/self/otkeys", json=one_time_keys)

    async def post_batch(self, batch: List[Dict]):
        """Queue one message per recipient on the relay, all or nothing"""
        await self._request("POST", "/message", json={"batch": batch})

    async def acknowledge(self, seq_id: int):
        """Let the relay prune our mail up to ``seq_id``"""
        await self._request("DELETE", "/self/messages", params={"seqID": seq_id})

    async def events(self) -> AsyncIterator[Event]:
        """
        Subscribe to pushed events.

        Raises:
            TransportError: If the connection fails or authentication is refused
        """
        try:
            async with websockets.connect(self.ws_url) as websocket:
                await websocket.send(json.dumps({
                    "type": "auth",
                    "deviceId": self.device_id
                }))
                response = json.loads(await websocket.recv())
                if not isinstance(response, dict):
                    raise TransportError(f"Unexpected authentication reply: {response!r}")
                if response.get("type") != "auth_success":
                    raise TransportError(f"Relay refused authentication: {response.get('message')}")
                logger.info("Connected to relay %s", self.server_url)

                async for frame in websocket:
                    event = parse_event(frame)
                    if event is not None:
                        yield event
        except websockets.exceptions.ConnectionClosedOK:
            logger.info("Relay closed the connection")
        except (websockets.exceptions.WebSocketException, OSError, ValueError) as e:
            raise TransportError(f"Relay connection failed: {e}") from e

    async def aclose(self):
        await self.http_client.aclose()
