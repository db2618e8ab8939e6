"""
FastAPI relay server for end-to-end encrypted messaging.

This server:
- Hands out published one-time keys so devices can start sessions offline
- Queues encrypted messages per recipient with increasing sequence numbers
- Pushes new mail and one-time key requests over WebSocket
- Prunes delivered mail when a device acknowledges a sequence number

It never sees plaintext.
"""

import logging
import os
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .auth import current_device
from .state import RelayState

logger = logging.getLogger(__name__)

HOST = os.environ.get("E2E_RELAY_HOST", "0.0.0.0")
PORT = int(os.environ.get("E2E_RELAY_PORT", "8080"))


# Pydantic models for API
class BatchEntry(BaseModel):
    device_id: str = Field(alias="deviceId", min_length=1)
    payload: Any


class MessageBatch(BaseModel):
    batch: List[BatchEntry]


# WebSocket connection manager
class ConnectionManager:
    """Manages active WebSocket connections"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    def disconnect(self, device_id: str, websocket: WebSocket):
        """Remove a WebSocket connection if it is still the current one"""
        if self.active_connections.get(device_id) is websocket:
            del self.active_connections[device_id]

    async def send_event(self, device_id: str, event: dict):
        """Push an event to a device if it is online"""
        websocket = self.active_connections.get(device_id)
        if websocket is None:
            return
        try:
            await websocket.send_json(event)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info("Push to %s failed, mail stays queued: %s", device_id[:12], e)
            self.disconnect(device_id, websocket)


def create_app() -> FastAPI:
    """Create a relay app with empty state"""
    app = FastAPI(
        title="Encrypted Message Relay",
        description="Relay for end-to-end encrypted messages and one-time keys",
        version="1.0.0"
    )
    app.state.relay = RelayState()
    app.state.connections = ConnectionManager()

    @app.post("/self/otkeys")
    async def publish_one_time_keys(keys: Dict[str, str], request: Request,
                                    device_id: str = Depends(current_device)):
        """Store one-time keys published by the calling device"""
        count = request.app.state.relay.add_one_time_keys(device_id, keys)
        logger.info("%s published %d keys, %d available", device_id[:12], len(keys), count)
        return {"status": "success", "available": count}

    @app.get("/devices/otkey")
    async def claim_one_time_key(request: Request, device_id: str = Query(...)):
        """
        Claim one unused one-time key of a device.

        This is public - anyone can start a session with a device.
        """
        relay: RelayState = request.app.state.relay
        otkey = relay.take_one_time_key(device_id)
        if otkey is None:
            raise HTTPException(status_code=404, detail="No one-time keys available")

        if relay.needs_one_time_keys(device_id):
            await request.app.state.connections.send_event(device_id, {"type": "addOtkeys"})
        return {"otkey": otkey}

    @app.post("/message")
    async def post_messages(message_batch: MessageBatch, request: Request,
                            sender: str = Depends(current_device)):
        """Queue one message per batch entry and push it to online recipients"""
        relay: RelayState = request.app.state.relay
        envelopes = [
            (entry.device_id, relay.enqueue(entry.device_id, sender, entry.payload))
            for entry in message_batch.batch
        ]
        for recipient, envelope in envelopes:
            await request.app.state.connections.send_event(recipient, {
                "type": "noiseMessage",
                "data": [envelope]
            })
        return {"status": "success", "queued": len(envelopes)}

    @app.delete("/self/messages")
    async def acknowledge_messages(request: Request, seq_id: int = Query(..., alias="seqID", ge=0),
                                   device_id: str = Depends(current_device)):
        """Delete the calling device's mail up to and including ``seqID``"""
        removed = request.app.state.relay.prune(device_id, seq_id)
        return {"status": "success", "removed": removed}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for pushed events.

        Protocol:
        1. Client sends: {"type": "auth", "deviceId": "..."}
        2. Server responds: {"type": "auth_success", "deviceId": "..."}
        3. Server pushes pending mail: {"type": "noiseMessage", "data": [envelope, ...]}
        4. Server pushes key requests: {"type": "addOtkeys"}
        """
        relay: RelayState = websocket.app.state.relay
        manager: ConnectionManager = websocket.app.state.connections
        device_id = None

        try:
            await websocket.accept()

            auth_data = await websocket.receive_json()
            if auth_data.get("type") != "auth" or not auth_data.get("deviceId"):
                await websocket.send_json({"type": "error", "message": "Authentication required"})
                await websocket.close()
                return

            device_id = auth_data["deviceId"]
            manager.active_connections[device_id] = websocket
            await websocket.send_json({"type": "auth_success", "deviceId": device_id})
            logger.info("%s connected", device_id[:12])

            pending = relay.pending(device_id)
            if pending:
                await websocket.send_json({"type": "noiseMessage", "data": pending})
            if relay.needs_one_time_keys(device_id):
                await websocket.send_json({"type": "addOtkeys"})

            while True:
                data = await websocket.receive_json()
                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

        except WebSocketDisconnect:
            pass
        finally:
            if device_id:
                manager.disconnect(device_id, websocket)
                logger.info("%s disconnected", device_id[:12])

    return app


app = create_app()


def main():
    """Run the relay with uvicorn"""
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
