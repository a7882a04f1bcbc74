"""WebSocket channel to the signaling relay.

The relay forwards JSON messages between participants (mesh traffic, routed
by toPeerId) and between each participant and the media server (uplink
traffic). The channel only moves dicts in and out; interpretation happens in
the orchestrator.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Optional

import websockets

if TYPE_CHECKING:
    from websockets.client import ClientConnection

logger = logging.getLogger(__name__)


class SignalingChannel:
    """A single WebSocket connection to the relay.

    Attributes:
        url: Relay URL including the clientId query parameter.
    """

    def __init__(self, url: str):
        self.url = url
        self.websocket: Optional["ClientConnection"] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self.websocket is not None and not self._closed

    async def connect(self):
        """Open the WebSocket. Connection errors propagate to the caller."""
        self._closed = False
        self.websocket = await websockets.connect(self.url)
        logger.info(f"Connected to signaling relay at {self.url}")

    async def send(self, message: Dict[str, Any]):
        """Send one JSON message; messages sent while disconnected are dropped."""
        if not self.connected:
            logger.debug(f"Signaling not connected, dropping {message.get('type')}")
            return
        try:
            await self.websocket.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"Signaling closed while sending {message.get('type')}")
            self._closed = True

    async def receive(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded messages until the relay closes the connection."""
        if self.websocket is None:
            return
        try:
            async for raw in self.websocket:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.error("Invalid JSON received from signaling relay")
                    continue
                yield data
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Signaling connection closed: {e}")
        finally:
            self._closed = True

    async def close(self):
        if self.websocket is None or self._closed:
            self._closed = True
            return
        self._closed = True
        try:
            await self.websocket.close()
        except Exception as e:
            logger.warning(f"Error closing signaling connection: {e}")
        logger.info("Signaling connection closed")
