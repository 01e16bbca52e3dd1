"""pytest shared fixtures and fakes.

- FakePeerConnection: aiortc-shaped peer connection on pyee's AsyncIOEventEmitter
- ScriptedTransport: in-memory SignalTransport driven by the test
- LoopbackTransport: in-memory transport wired to a real relay RoomRegistry
- helpers to build RoomSessions and drain their queues
"""

import asyncio
from typing import List, Optional

import pytest
from aiortc import MediaStreamTrack, RTCIceCandidate, RTCSessionDescription
from aiortc.exceptions import InvalidStateError
from pyee.asyncio import AsyncIOEventEmitter

from peercall.config import Settings
from peercall.core.media import MediaStream
from peercall.errors import TransportError
from peercall.relay import RoomRegistry
from peercall.room_session import RoomSession
from peercall.schemas import (
    AnswerMessage,
    IceCandidate,
    IceCandidateMessage,
    OfferMessage,
    SessionDescription,
    dump_message,
    parse_message,
)

ROOM = "r1"
STUN = "stun:stun.example.org:3478"


# ===== Media fakes =====


class FakeTrack(MediaStreamTrack):
    def __init__(self, kind: str = "audio"):
        super().__init__()
        self.kind = kind

    async def recv(self):
        await asyncio.sleep(3600)


class FakeSender:
    def __init__(self, track):
        self.track = track
        self.stopped = 0

    async def stop(self):
        self.stopped += 1


class FakePeerConnection(AsyncIOEventEmitter):
    """Just enough of RTCPeerConnection for negotiation tests."""

    def __init__(self):
        super().__init__()
        self.senders: List[FakeSender] = []
        self.candidates: List[RTCIceCandidate] = []
        self.early_candidates = 0
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.connectionState = "new"
        self.closed = 0
        self.offer_gate: Optional[asyncio.Event] = None
        self.offers_created = 0

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self):
        return list(self.senders)

    async def createOffer(self):
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        self.offers_created += 1
        return RTCSessionDescription(sdp="v=0 fake-offer", type="offer")

    async def createAnswer(self):
        if self.remoteDescription is None or self.remoteDescription.type != "offer":
            raise InvalidStateError("cannot answer without a remote offer")
        return RTCSessionDescription(sdp="v=0 fake-answer", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        if "garbage" in description.sdp:
            raise ValueError("invalid SDP")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            self.early_candidates += 1
        if candidate.sdpMid is None and candidate.sdpMLineIndex is None:
            raise ValueError("candidate needs sdpMid or sdpMLineIndex")
        self.candidates.append(candidate)

    async def close(self):
        self.closed += 1
        self.connectionState = "closed"


class FakePeerFactory:
    def __init__(self):
        self.created: List[FakePeerConnection] = []
        self.fail = False

    def __call__(self):
        if self.fail:
            raise RuntimeError("engine unavailable")
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


class FakeCapture:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    def get_local_stream(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return MediaStream([FakeTrack("audio"), FakeTrack("video")])


# ===== Transport fakes =====


class ScriptedTransport:
    """Records outbound messages; the test delivers inbound ones by hand."""

    def __init__(self):
        self.sent = []
        self.is_connected = False
        self.connect_error = None
        self.disconnects = 0
        self._handlers = {}
        self._disconnect_handlers = []

    def subscribe(self, message_type, handler):
        self._handlers[message_type] = handler

    def on_disconnect(self, handler):
        self._disconnect_handlers.append(handler)

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.is_connected = True

    async def disconnect(self):
        self.disconnects += 1
        self.is_connected = False

    async def send(self, message):
        self.sent.append(message)

    def deliver(self, message):
        # round-trip through the wire format like a real relay frame
        message = parse_message(dump_message(message))
        handler = self._handlers.get(message.type)
        if handler is not None:
            handler(message)

    def drop(self):
        self.is_connected = False
        for handler in self._disconnect_handlers:
            handler(TransportError("relay connection lost"))

    def sent_types(self):
        return [m.type for m in self.sent]


class LoopbackTransport(ScriptedTransport):
    """Talks to an in-process RoomRegistry, which sees it as a websocket."""

    def __init__(self, registry: RoomRegistry):
        super().__init__()
        self.registry = registry

    async def send(self, message):
        self.sent.append(message)
        if message.type == "join":
            await self.registry.join(self, message.room_id)
        elif message.type == "leave":
            await self.registry.leave(self)
        else:
            await self.registry.forward(self, message)

    async def send_text(self, text):
        self.deliver(parse_message(text))

    async def disconnect(self):
        await super().disconnect()
        await self.registry.leave(self)


# ===== Builders =====


def make_session(transport=None, capture=None, factory=None):
    factory = factory or FakePeerFactory()
    transport = transport or ScriptedTransport()
    session = RoomSession(
        Settings(stun_server_url=STUN),
        transport=transport,
        capture=capture or FakeCapture(),
        pc_factory=factory,
    )
    return session, transport, factory


async def settle(*sessions, rounds: int = 6):
    for _ in range(rounds):
        for session in sessions:
            await session.settle()


def candidate(n: int, sdp_mid: str = "0") -> IceCandidate:
    return IceCandidate(
        candidate=f"candidate:{n} 1 udp {2130706431 - n} 192.0.2.{n} {50000 + n} typ host",
        sdpMid=sdp_mid,
        sdpMLineIndex=0,
    )


def offer(sdp: str = "v=0 remote-offer", room: str = ROOM) -> OfferMessage:
    return OfferMessage(room_id=room, sdp=SessionDescription(type="offer", sdp=sdp))


def answer(sdp: str = "v=0 remote-answer", room: str = ROOM) -> AnswerMessage:
    return AnswerMessage(room_id=room, sdp=SessionDescription(type="answer", sdp=sdp))


def ice(c: IceCandidate, room: str = ROOM) -> IceCandidateMessage:
    return IceCandidateMessage(room_id=room, candidate=c)


@pytest.fixture
def registry():
    return RoomRegistry()
