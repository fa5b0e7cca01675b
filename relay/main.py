"""
FastAPI relay for end-to-end encrypted chat.

This server:
- Pairs at most two peers per room over WebSocket
- Forwards frames between them verbatim (it cannot decrypt anything)
- Replays a peer's public-key frame to a peer that joins later
- Closes the room when one peer leaves so both sides re-key
"""

import argparse
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from pydantic import BaseModel


MAX_PEERS = 2
DEFAULT_ROOM = "default"
CLOSE_PEER_LEFT = 4000
CLOSE_ROOM_FULL = 4001

logger = logging.getLogger(__name__)


class RoomStatus(BaseModel):
    room: str
    peers: int


@dataclass
class Room:
    peers: List[WebSocket] = field(default_factory=list)
    key_frames: Dict[int, str] = field(default_factory=dict)


def _is_key_frame(text: str) -> bool:
    try:
        message = json.loads(text)
    except ValueError:
        return False
    return isinstance(message, dict) and message.get("type") == "public-key"


class RoomManager:
    """Tracks which WebSocket connections share a room"""

    def __init__(self):
        self.rooms: Dict[str, Room] = {}

    def peer_count(self, name: str) -> int:
        room = self.rooms.get(name)
        return len(room.peers) if room else 0

    def join(self, name: str, websocket: WebSocket) -> bool:
        """Reserve a place in a room. Returns False if the room is full."""
        room = self.rooms.setdefault(name, Room())
        if len(room.peers) >= MAX_PEERS:
            return False
        room.peers.append(websocket)
        return True

    def replay_for(self, name: str, websocket: WebSocket) -> List[str]:
        """Key frames already sent by the other peers of a room"""
        room = self.rooms.get(name)
        if room is None:
            return []
        return [
            room.key_frames[id(peer)] for peer in room.peers
            if peer is not websocket and id(peer) in room.key_frames
        ]

    def leave(self, name: str, websocket: WebSocket) -> List[WebSocket]:
        """Remove a connection and empty the room. Returns the peers left behind."""
        room = self.rooms.get(name)
        if room is None or websocket not in room.peers:
            return []
        remaining = [peer for peer in room.peers if peer is not websocket]
        del self.rooms[name]
        return remaining

    def targets(self, name: str, websocket: WebSocket, text: str) -> List[WebSocket]:
        """Record key frames and return the connections a frame goes to"""
        room = self.rooms.get(name)
        if room is None or websocket not in room.peers:
            return []
        if _is_key_frame(text):
            room.key_frames[id(websocket)] = text
        # peers still in the opening handshake get key frames through replay_for()
        return [
            peer for peer in room.peers
            if peer is not websocket and peer.application_state == WebSocketState.CONNECTED
        ]


manager = RoomManager()

app = FastAPI(
    title="Encrypted Chat Relay",
    description="Untrusted relay for two-party end-to-end encrypted chat",
    version="1.0.0"
)


@app.get("/api/rooms/{room}", response_model=RoomStatus)
async def room_status(room: str):
    """Number of peers connected to a room"""
    return RoomStatus(room=room, peers=manager.peer_count(room))


@app.websocket("/ws")
async def default_room_endpoint(websocket: WebSocket):
    await relay(websocket, DEFAULT_ROOM)


@app.websocket("/ws/{room}")
async def room_endpoint(websocket: WebSocket, room: str):
    await relay(websocket, room)


async def relay(websocket: WebSocket, room: str):
    """
    Forward frames between the two peers of a room.

    Protocol:
    1. Peer connects; if the room already has two peers it is closed with 4001
    2. Key frames already sent by the other peer are replayed to the newcomer
    3. Every text frame is forwarded unchanged to the other peer
    4. When either peer leaves, the other is closed with 4000
    """
    joined = manager.join(room, websocket)

    try:
        await websocket.accept()
        if not joined:
            logger.info("Room %s is full, rejecting connection", room)
            await websocket.close(code=CLOSE_ROOM_FULL, reason="room full")
            return

        logger.info("Peer joined room %s (%d/%d)", room, manager.peer_count(room), MAX_PEERS)
        for frame in manager.replay_for(room, websocket):
            await websocket.send_text(frame)

        while True:
            text = await websocket.receive_text()
            for peer in manager.targets(room, websocket, text):
                await peer.send_text(text)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning("WebSocket error in room %s: %s", room, e)
    finally:
        remaining = manager.leave(room, websocket)
        if joined:
            logger.info("Peer left room %s", room)
        for peer in remaining:
            try:
                await peer.close(code=CLOSE_PEER_LEFT, reason="peer left")
            except (RuntimeError, WebSocketDisconnect):
                pass  # already closed


def cli(argv=None):
    import uvicorn

    parser = argparse.ArgumentParser(description="Relay for end-to-end encrypted chat")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    cli()
