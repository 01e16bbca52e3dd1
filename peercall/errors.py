"""Error taxonomy shared by the transport, negotiation and capture layers.

Every class carries a ``kind`` that ends up in the user-facing status string,
so callers never have to surface a raw exception.
"""


class PeerCallError(Exception):
    kind = "PeerCallError"


class TransportError(PeerCallError, ConnectionError):
    """Relay unreachable or the signaling channel dropped."""

    kind = "TransportError"


class RoomFullError(TransportError):
    """The relay refused the join because the room already has two members."""

    kind = "RoomFullError"


class MediaPermissionError(PeerCallError):
    """Capture was denied; joining stays disabled until it is granted."""

    kind = "PermissionError"


class DeviceError(PeerCallError):
    kind = "DeviceError"


class NegotiationError(PeerCallError):
    """A description or candidate was malformed or rejected by the engine."""

    kind = "NegotiationError"


class InvalidCandidate(NegotiationError):
    pass


class ResourceError(PeerCallError):
    """The media engine failed to create or close a peer connection."""

    kind = "ResourceError"


class UnknownMessageError(PeerCallError, ValueError):
    kind = "UnknownMessageError"


__all__ = [
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
