# core/rtc_peer.py
import logging
from typing import Callable, List, Optional, Set

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import InvalidCandidate, NegotiationError, ResourceError
from ..schemas import IceCandidate, SessionDescription
from .media import MediaStream

logger = logging.getLogger(__name__)

_ENGINE_ERRORS = (ValueError, InvalidAccessError, InvalidStateError)


class ConnectionManager:
    """Owns the single RTCPeerConnection of a room membership.

    ``generation`` is bumped on every close(). Engine callbacks are bound to the
    generation that created the connection, so events from a closed connection
    never reach the current one. Remote candidates are held back until a remote
    description has been applied to the current connection.
    """

    def __init__(
        self,
        stun_server_url: str,
        pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
        on_local_candidate: Optional[Callable[[int, IceCandidate], None]] = None,
        on_remote_stream: Optional[Callable[[Optional[MediaStream]], None]] = None,
        on_connection_state: Optional[Callable[[int, str], None]] = None,
    ):
        self.ice_config = RTCConfiguration(iceServers=[RTCIceServer(urls=[stun_server_url])])
        self._pc_factory = pc_factory or (lambda: RTCPeerConnection(configuration=self.ice_config))
        self.on_local_candidate = on_local_candidate
        self.on_remote_stream = on_remote_stream
        self.on_connection_state = on_connection_state

        self.generation = 0
        self._pc: Optional[RTCPeerConnection] = None
        self._relay = MediaRelay()
        self._local_stream: Optional[MediaStream] = None
        self._attached: Set[str] = set()
        self._relayed = []
        self._remote_stream: Optional[MediaStream] = None
        self._remote_applied = False
        self._pending: List[IceCandidate] = []
        self._applied_keys = set()

    @property
    def is_open(self) -> bool:
        return self._pc is not None

    @property
    def remote_description_applied(self) -> bool:
        return self._remote_applied

    @property
    def pending_candidates(self) -> List[IceCandidate]:
        return list(self._pending)

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self._remote_stream

    def create(self) -> RTCPeerConnection:
        """Returns the current peer connection, building one if none exists."""
        if self._pc is not None:
            return self._pc
        try:
            pc = self._pc_factory()
        except Exception as e:
            raise ResourceError(f"could not create peer connection: {e}") from e

        generation = self.generation
        self._pc = pc

        @pc.on("icecandidate")
        def on_icecandidate(candidate):
            if candidate is None or generation != self.generation:
                return
            if self.on_local_candidate:
                self.on_local_candidate(generation, self.serialize_candidate(candidate))

        @pc.on("track")
        def on_track(track):
            if generation != self.generation:
                return
            logger.info(f"[RTC] Remote {track.kind} track arrived (gen {generation})")
            if self._remote_stream is None:
                self._remote_stream = MediaStream()
            self._remote_stream.add_track(track)
            if self.on_remote_stream:
                self.on_remote_stream(self._remote_stream)

        @pc.on("connectionstatechange")
        def on_connectionstatechange():
            logger.info(f"[RTC] gen {generation} connectionState -> {pc.connectionState}")
            if generation == self.generation and self.on_connection_state:
                self.on_connection_state(generation, pc.connectionState)

        logger.info(f"[RTC] Peer connection created (gen {generation})")
        self._attach_tracks()
        return pc

    def attach_local_tracks(self, stream: MediaStream) -> None:
        """Remembers the local stream; tracks are added now or when create() runs."""
        self._local_stream = stream
        if self._pc is not None:
            self._attach_tracks()

    def _attach_tracks(self) -> None:
        if self._local_stream is None:
            return
        for track in self._local_stream.get_tracks():
            if track.id in self._attached:
                continue
            relayed = self._relay.subscribe(track)
            self._pc.addTrack(relayed)
            self._relayed.append(relayed)
            self._attached.add(track.id)
            logger.debug(f"[RTC] Attached local {track.kind} track {track.id[:8]}")

    def _require_pc(self) -> RTCPeerConnection:
        if self._pc is None:
            raise NegotiationError("no peer connection for the current attempt")
        return self._pc

    async def create_local_description(self, role: str) -> SessionDescription:
        """Creates an offer or answer and installs it as the local description."""
        pc = self._require_pc()
        try:
            if role == "offer":
                description = await pc.createOffer()
            else:
                description = await pc.createAnswer()
            await pc.setLocalDescription(description)
        except _ENGINE_ERRORS as e:
            raise NegotiationError(f"could not create local {role}: {e}") from e
        local = pc.localDescription
        return SessionDescription(type=local.type, sdp=local.sdp)

    async def set_remote_description(self, description: SessionDescription) -> List[InvalidCandidate]:
        """Applies the peer's description, then flushes buffered candidates in order.

        Returns the buffered candidates the engine rejected; they do not fail the
        description itself.
        """
        pc = self._require_pc()
        generation = self.generation
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        except _ENGINE_ERRORS as e:
            raise NegotiationError(f"remote {description.type} rejected: {e}") from e
        if generation != self.generation:
            return []

        rejected = []
        flushed = 0
        while self._pending:
            candidate = self._pending.pop(0)
            try:
                await self._apply_candidate(pc, candidate)
                flushed += 1
            except InvalidCandidate as e:
                rejected.append(e)
            if generation != self.generation:
                return rejected
        self._remote_applied = True
        if flushed or rejected:
            logger.info(f"[RTC] Flushed {flushed} buffered candidates ({len(rejected)} rejected)")
        return rejected

    async def add_candidate(self, candidate: IceCandidate) -> bool:
        """Applies a remote candidate, or buffers it until the remote description is set.

        Returns True when the candidate reached the engine now. Candidates arriving
        while no connection is open belong to a closed attempt and are dropped.
        """
        if candidate.is_end_of_candidates:
            return False
        if self._pc is None:
            logger.debug(f"[RTC] No connection in gen {self.generation}, dropping candidate")
            return False
        key = candidate.key()
        if key in self._applied_keys or any(c.key() == key for c in self._pending):
            logger.debug("[RTC] Ignoring duplicate candidate")
            return False
        # validate before buffering so a malformed candidate is reported on arrival
        self.parse_candidate(candidate)
        if not self._remote_applied:
            self._pending.append(candidate)
            logger.debug(f"[RTC] Buffered candidate ({len(self._pending)} pending)")
            return False
        await self._apply_candidate(self._pc, candidate)
        return True

    async def _apply_candidate(self, pc: RTCPeerConnection, candidate: IceCandidate) -> None:
        ice = self.parse_candidate(candidate)
        try:
            await pc.addIceCandidate(ice)
        except _ENGINE_ERRORS as e:
            raise InvalidCandidate(f"engine rejected candidate {candidate.candidate!r}: {e}") from e
        self._applied_keys.add(candidate.key())

    @staticmethod
    def parse_candidate(candidate: IceCandidate) -> RTCIceCandidate:
        text = candidate.candidate.strip()
        if text.startswith("candidate:"):
            text = text.split(":", 1)[1]
        try:
            ice = candidate_from_sdp(text)
        except (AssertionError, ValueError, IndexError) as e:
            raise InvalidCandidate(f"malformed candidate {candidate.candidate!r}") from e
        ice.sdpMid = candidate.sdpMid
        ice.sdpMLineIndex = candidate.sdpMLineIndex
        return ice

    @staticmethod
    def serialize_candidate(ice: RTCIceCandidate) -> IceCandidate:
        return IceCandidate(
            candidate="candidate:" + candidate_to_sdp(ice),
            sdpMid=ice.sdpMid,
            sdpMLineIndex=ice.sdpMLineIndex,
        )

    async def close(self) -> None:
        """Stops senders, closes the connection and invalidates the current generation."""
        pc, self._pc = self._pc, None
        self.generation += 1
        self._pending.clear()
        self._applied_keys.clear()
        self._remote_applied = False
        self._attached.clear()
        relayed, self._relayed = self._relayed, []
        remote, self._remote_stream = self._remote_stream, None
        if pc is None:
            return

        try:
            for sender in pc.getSenders():
                await sender.stop()
            await pc.close()
        except Exception as e:
            raise ResourceError(f"could not close peer connection: {e}") from e
        finally:
            for track in relayed:
                track.stop()
            if remote is not None and self.on_remote_stream:
                self.on_remote_stream(None)
            logger.info(f"[RTC] Peer connection closed (now gen {self.generation})")
