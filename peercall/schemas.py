# schemas.py
import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import UnknownMessageError


# --- Payload Schemas ---
class SessionDescription(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    """Browser-style candidate dict; an empty ``candidate`` marks end-of-candidates."""

    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None

    @property
    def is_end_of_candidates(self) -> bool:
        return not self.candidate.strip()

    def key(self):
        return (self.candidate.strip(), self.sdpMid, self.sdpMLineIndex)


# --- Signal Message Schemas ---
class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class JoinMessage(_Message):
    type: Literal["join"] = "join"
    room_id: str = Field(alias="roomId")


class JoinedMessage(_Message):
    type: Literal["joined"] = "joined"
    count: int = Field(ge=0)


class PeerJoinedMessage(_Message):
    type: Literal["peer-joined"] = "peer-joined"


class ReadyMessage(_Message):
    type: Literal["ready"] = "ready"


class OfferMessage(_Message):
    type: Literal["offer"] = "offer"
    room_id: str = Field(alias="roomId")
    sdp: SessionDescription


class AnswerMessage(_Message):
    type: Literal["answer"] = "answer"
    room_id: str = Field(alias="roomId")
    sdp: SessionDescription


class IceCandidateMessage(_Message):
    type: Literal["ice-candidate"] = "ice-candidate"
    room_id: str = Field(alias="roomId")
    candidate: IceCandidate


class LeaveMessage(_Message):
    type: Literal["leave"] = "leave"
    room_id: str = Field(alias="roomId")


class PeerLeftMessage(_Message):
    type: Literal["peer-left"] = "peer-left"


class RoomFullMessage(_Message):
    type: Literal["room-full"] = "room-full"
    room_id: str = Field(alias="roomId")


SignalMessage = Annotated[
    Union[
        JoinMessage,
        JoinedMessage,
        PeerJoinedMessage,
        ReadyMessage,
        OfferMessage,
        AnswerMessage,
        IceCandidateMessage,
        LeaveMessage,
        PeerLeftMessage,
        RoomFullMessage,
    ],
    Field(discriminator="type"),
]

_signal_adapter = TypeAdapter(SignalMessage)

MESSAGE_TYPES = frozenset(
    model.model_fields["type"].default
    for model in (
        JoinMessage, JoinedMessage, PeerJoinedMessage, ReadyMessage, OfferMessage,
        AnswerMessage, IceCandidateMessage, LeaveMessage, PeerLeftMessage, RoomFullMessage,
    )
)


def parse_message(raw: Union[str, bytes, Dict[str, Any]]):
    """Validate a wire message into its SignalMessage variant.

    Raises UnknownMessageError for non-JSON input, unknown tags and payloads of
    the wrong shape.
    """
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except json.JSONDecodeError as e:
        raise UnknownMessageError(f"non-JSON signaling frame: {e}") from e
    if not isinstance(data, dict):
        raise UnknownMessageError(f"signaling frame is not an object: {type(data).__name__}")
    if data.get("type") not in MESSAGE_TYPES:
        raise UnknownMessageError(f"unknown signaling message type: {data.get('type')!r}")
    try:
        return _signal_adapter.validate_python(data)
    except ValidationError as e:
        raise UnknownMessageError(f"malformed {data['type']!r} message: {e}") from e


def dump_message(message) -> str:
    return message.model_dump_json(by_alias=True)
