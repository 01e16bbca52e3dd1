"""Two-party WebRTC calls negotiated through a room-based signaling relay."""

from .config import Settings
from .core.media import MediaCapture, MediaStream
from .core.rtc_peer import ConnectionManager
from .core.signaling_client import SignalingClient
from .errors import (
    DeviceError,
    InvalidCandidate,
    MediaPermissionError,
    NegotiationError,
    PeerCallError,
    ResourceError,
    RoomFullError,
    TransportError,
    UnknownMessageError,
)
from .negotiation import ConnectionState, Membership, NegotiationStateMachine, Role
from .room_session import RoomSession

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "MediaCapture",
    "MediaStream",
    "ConnectionManager",
    "SignalingClient",
    "NegotiationStateMachine",
    "ConnectionState",
    "Membership",
    "Role",
    "RoomSession",
    "PeerCallError",
    "TransportError",
    "RoomFullError",
    "MediaPermissionError",
    "DeviceError",
    "NegotiationError",
    "InvalidCandidate",
    "ResourceError",
    "UnknownMessageError",
]
