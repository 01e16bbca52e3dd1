# relay.py
"""Reference rendezvous relay.

Pairs at most two websocket members per room and fans negotiation messages out
to the other member. Rooms live in memory only.
"""

import argparse
import logging
from typing import Dict, List

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .errors import UnknownMessageError
from .schemas import (
    JoinedMessage,
    PeerJoinedMessage,
    PeerLeftMessage,
    ReadyMessage,
    RoomFullMessage,
    dump_message,
    parse_message,
)

logger = logging.getLogger(__name__)

ROOM_CAPACITY = 2
FORWARDED_TYPES = ("offer", "answer", "ice-candidate")


# ---------- Safe send helper ----------

async def safe_send(ws: WebSocket, message) -> None:
    """Send a message, ignoring sockets that went away mid-send."""
    try:
        await ws.send_text(dump_message(message))
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug(f"[Relay] Send of {message.type!r} dropped: {e}")


class RoomRegistry:
    """In-memory rooms: {room_id: [ws, ...]} plus the reverse index."""

    def __init__(self, capacity: int = ROOM_CAPACITY):
        self.capacity = capacity
        self.rooms: Dict[str, List[WebSocket]] = {}
        self.memberships: Dict[int, str] = {}

    def count(self, room_id: str) -> int:
        return len(self.rooms.get(room_id, []))

    async def join(self, ws: WebSocket, room_id: str) -> None:
        current = self.memberships.get(id(ws))
        if current == room_id:
            # a member that went idle locally and joins again
            count = self.count(room_id)
            await safe_send(ws, JoinedMessage(count=count))
            if count == self.capacity:
                await safe_send(ws, ReadyMessage())
            return
        if current is not None:
            await self.leave(ws)

        members = self.rooms.get(room_id, [])
        if len(members) >= self.capacity:
            logger.info(f"[Relay] Room {room_id} full, rejecting join")
            await safe_send(ws, RoomFullMessage(room_id=room_id))
            return

        members.append(ws)
        self.rooms[room_id] = members
        self.memberships[id(ws)] = room_id
        logger.info(f"[Relay] Join {room_id} ({len(members)}/{self.capacity})")

        await safe_send(ws, JoinedMessage(count=len(members)))
        for other in members:
            if other is not ws:
                await safe_send(other, PeerJoinedMessage())
        if len(members) == self.capacity:
            await safe_send(ws, ReadyMessage())

    async def leave(self, ws: WebSocket) -> None:
        room_id = self.memberships.pop(id(ws), None)
        if room_id is None:
            return
        members = [m for m in self.rooms.get(room_id, []) if m is not ws]
        self.rooms[room_id] = members
        if not members:
            self.rooms.pop(room_id, None)
        logger.info(f"[Relay] Leave {room_id} ({len(members)} left)")
        for other in members:
            await safe_send(other, PeerLeftMessage())

    async def forward(self, ws: WebSocket, message) -> None:
        room_id = self.memberships.get(id(ws))
        if room_id is None or room_id != message.room_id:
            logger.warning(f"[Relay] {message.type!r} for {message.room_id!r} from a non-member, dropped")
            return
        for other in self.rooms.get(room_id, []):
            if other is not ws:
                await safe_send(other, message)


def create_app(registry: RoomRegistry = None) -> FastAPI:
    app = FastAPI(title="peercall relay")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.registry = registry or RoomRegistry()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        rooms: RoomRegistry = app.state.registry
        await websocket.accept()
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = parse_message(raw)
                except UnknownMessageError as e:
                    logger.warning(f"[Relay] {e}")
                    continue

                if message.type == "join":
                    await rooms.join(websocket, message.room_id)
                elif message.type == "leave":
                    await rooms.leave(websocket)
                elif message.type in FORWARDED_TYPES:
                    await rooms.forward(websocket, message)
                else:
                    logger.warning(f"[Relay] Clients may not send {message.type!r}")
        except WebSocketDisconnect:
            logger.info("[Relay] Client disconnected")
        finally:
            await rooms.leave(websocket)

    return app


app = create_app()


def main(argv=None):
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="peercall rendezvous relay")
    parser.add_argument("--host", default=None, help="Bind address")
    parser.add_argument("--port", type=int, default=None, help="Bind port")
    parser.add_argument("--log-level", default=None, help="Logging level")
    args = parser.parse_args(argv)
    settings = settings.override(relay_host=args.host, relay_port=args.port,
                                 log_level=args.log_level.upper() if args.log_level else None)

    logging.basicConfig(level=settings.log_level)
    logger.info(f"[Relay] Starting at ws://{settings.relay_host}:{settings.relay_port}/ws")
    uvicorn.run(app, host=settings.relay_host, port=settings.relay_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
