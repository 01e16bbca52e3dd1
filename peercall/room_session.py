import logging
from typing import Callable, Optional

from .config import Settings
from .core.media import MediaCapture, MediaStream
from .core.rtc_peer import ConnectionManager
from .core.signaling_client import SignalingClient
from .errors import DeviceError, MediaPermissionError, TransportError
from .negotiation import ConnectionState, Membership, NegotiationStateMachine, TransportLost

logger = logging.getLogger(__name__)

_SUBSCRIBED_TYPES = ("joined", "peer-joined", "ready", "offer", "answer", "ice-candidate", "peer-left", "room-full")


class RoomSession:
    """Binds a caller's join/leave intent to transport, negotiation and connection.

    Owns exactly one of each collaborator. The local stream comes from the
    capture provider and the remote stream is whatever the connection reports.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport=None,
        capture=None,
        pc_factory=None,
        on_status: Optional[Callable[[Membership], None]] = None,
        on_remote_stream: Optional[Callable[[Optional[MediaStream]], None]] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.transport = transport or SignalingClient(self.settings.signaling_url)
        self.capture = capture or MediaCapture(self.settings)
        self.connection = ConnectionManager(
            self.settings.stun_server_url,
            pc_factory=pc_factory,
            on_remote_stream=self._on_remote_stream,
        )
        self.negotiation = NegotiationStateMachine(self.transport, self.connection, on_status=self._on_membership)
        self.on_status = on_status
        self.on_remote_stream = on_remote_stream

        self.local_stream: Optional[MediaStream] = None
        self.remote_stream: Optional[MediaStream] = None
        self._membership = Membership()

        for message_type in _SUBSCRIBED_TYPES:
            self.transport.subscribe(message_type, self.negotiation.receive)
        self.transport.on_disconnect(self._on_transport_lost)

    @property
    def membership(self) -> Membership:
        return self._membership

    @property
    def status(self) -> str:
        return self._membership.status

    @property
    def state(self) -> ConnectionState:
        return self._membership.state

    def _on_membership(self, membership: Membership) -> None:
        self._membership = membership
        logger.info(f"[Room] Status: {membership.status}")
        if self.on_status:
            self.on_status(membership)

    def _on_remote_stream(self, stream: Optional[MediaStream]) -> None:
        self.remote_stream = stream
        if self.on_remote_stream:
            self.on_remote_stream(stream)

    def _on_transport_lost(self, error: TransportError) -> None:
        self.negotiation.post(TransportLost(error))

    def _fail(self, error) -> None:
        self._on_membership(Membership(detail=self._membership.detail, last_error=error.kind))

    async def start_local_media(self) -> bool:
        """Acquires the local stream once; a denial keeps join disabled."""
        if self.local_stream is not None:
            return True
        try:
            self.local_stream = self.capture.get_local_stream()
        except (MediaPermissionError, DeviceError) as e:
            logger.warning(f"[Room] Local media unavailable: {e}")
            self._fail(e)
            return False
        return True

    async def join(self, room_id: str) -> bool:
        """Joins ``room_id``; returns False when media, the relay or the engine is unavailable."""
        if self.state is not ConnectionState.IDLE:
            logger.info(f"[Room] Already {self.state.value}, join({room_id}) ignored")
            return False
        if not await self.start_local_media():
            return False
        if not self.transport.is_connected:
            try:
                await self.transport.connect()
            except TransportError as e:
                self._fail(e)
                return False
            self._on_membership(Membership(detail="socket connected"))

        self.connection.attach_local_tracks(self.local_stream)
        membership = await self.negotiation.join(room_id)
        return membership.state is not ConnectionState.IDLE

    async def leave(self) -> None:
        """Leaves the room; safe from any state and any number of times."""
        await self.negotiation.leave()

    async def settle(self) -> None:
        await self.negotiation.settle()

    async def close(self) -> None:
        """Leaves, disconnects from the relay and releases the local stream."""
        await self.leave()
        await self.negotiation.stop()
        await self.transport.disconnect()
        if self.local_stream is not None:
            self.local_stream.stop()
            self.local_stream = None
        self.remote_stream = None
