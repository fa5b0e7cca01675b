"""
WebSocket transport to the relay.

Implements the session's transport contract on top of `websockets`: a
background task connects, reports the connection, feeds every received
frame to the session, and reports the disconnect with the reason.
"""

import asyncio
import logging
from typing import Optional
import websockets

from e2e_crypto.errors import TransportError
from e2e_crypto.handshake import SessionHandshake, Transport


logger = logging.getLogger(__name__)


class WebSocketTransport(Transport):
    """
    One WebSocket connection to the relay.
    """

    def __init__(self, url: str, open_timeout: float = 10.0):
        """
        Args:
            url: Relay WebSocket URL, e.g. ws://localhost:8000/ws
            open_timeout: Seconds to wait for the opening handshake
        """
        self.url = url
        self.open_timeout = open_timeout
        self.websocket = None
        self._task: Optional[asyncio.Task] = None

    async def open(self, session: SessionHandshake):
        """Connect in the background and deliver events to `session`"""
        if self._task is not None:
            raise TransportError("Transport already opened")
        self._task = asyncio.create_task(self._pump(session))

    async def _pump(self, session: SessionHandshake):
        error = None
        try:
            async with websockets.connect(self.url, open_timeout=self.open_timeout) as websocket:
                self.websocket = websocket
                logger.info("Connected to relay %s", self.url)
                session.connected()
                async for message in websocket:
                    session.frame_received(message)
        except websockets.exceptions.ConnectionClosed as e:
            error = TransportError(f"Connection closed: {e}")
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            error = TransportError(f"Cannot reach relay {self.url}: {e}")
        finally:
            self.websocket = None
            session.disconnected(error)

    async def send(self, data: str):
        """Send one text frame to the relay"""
        websocket = self.websocket
        if websocket is None:
            raise TransportError("Not connected")
        try:
            await websocket.send(data)
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Connection closed: {e}") from e

    async def close(self):
        """Close the connection and wait for the reader task to finish"""
        task = self._task
        if self.websocket is not None:
            await self.websocket.close()
        elif task is not None:
            task.cancel()
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)
