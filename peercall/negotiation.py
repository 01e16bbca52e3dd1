"""Session negotiation for a two-member room.

Every input (relay messages, local join/leave, engine completions, local ICE
candidates, engine state changes, loss of the relay) is funnelled through one
``asyncio.Queue`` and handled by a single consumer task, so there is exactly one
mutator of negotiation state. Engine work runs in operation tasks chained in
submission order. Each task posts its outcome back to the queue, tagged with the
ConnectionManager generation it started under. Outcomes from an older generation
are dropped.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Set

from .core.rtc_peer import ConnectionManager
from .errors import NegotiationError, PeerCallError, ResourceError, RoomFullError
from .schemas import AnswerMessage, IceCandidate, IceCandidateMessage, JoinMessage, LeaveMessage, OfferMessage

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    JOINING = "joining"
    JOINED = "joined"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


class Role(str, enum.Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


@dataclass(frozen=True)
class Membership:
    """Display-level snapshot of the room membership."""

    room_id: Optional[str] = None
    state: ConnectionState = ConnectionState.IDLE
    detail: str = "idle"
    participants: int = 0
    last_error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.last_error:
            return f"{self.detail} [{self.last_error}]"
        return self.detail


# --- Queue events ---
@dataclass
class LocalJoin:
    room_id: str


@dataclass
class LocalLeave:
    pass


@dataclass
class Inbound:
    message: Any


@dataclass
class TransportLost:
    error: PeerCallError


@dataclass
class OperationCompleted:
    generation: int
    operation: str
    result: Any = None
    error: Optional[PeerCallError] = None


@dataclass
class LocalCandidateDiscovered:
    generation: int
    candidate: IceCandidate


@dataclass
class EngineStateChanged:
    generation: int
    state: str


LOCAL_DESCRIPTION = "local-description"
REMOTE_DESCRIPTION = "remote-description"
CANDIDATE = "candidate"


@dataclass
class _Attempt:
    generation: int
    role: Role
    offer_sent: bool = False
    answer_received: bool = False
    answer_sent: bool = False


class NegotiationStateMachine:
    def __init__(self, transport, connection: ConnectionManager,
                 on_status: Optional[Callable[[Membership], None]] = None):
        self.transport = transport
        self.connection = connection
        self.on_status = on_status
        self.membership = Membership()

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._attempt: Optional[_Attempt] = None
        self._operations: Set[asyncio.Task] = set()
        self._last_operation: Optional[asyncio.Task] = None

        connection.on_local_candidate = lambda gen, c: self.post(LocalCandidateDiscovered(gen, c))
        connection.on_connection_state = lambda gen, s: self.post(EngineStateChanged(gen, s))

        self._message_handlers = {
            "joined": self._on_joined,
            "peer-joined": self._on_peer_joined,
            "ready": self._on_ready,
            "offer": self._on_offer,
            "answer": self._on_answer,
            "ice-candidate": self._on_ice_candidate,
            "peer-left": self._on_peer_left,
            "room-full": self._on_room_full,
        }

    @property
    def state(self) -> ConnectionState:
        return self.membership.state

    @property
    def role(self) -> Optional[Role]:
        return self._attempt.role if self._attempt else None

    # --- Queue plumbing ---

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._cancel_operations()
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    def post(self, event) -> None:
        self._queue.put_nowait((event, None))

    def receive(self, message) -> None:
        """Queues an inbound relay message; used as the transport subscriber."""
        self.post(Inbound(message))

    async def submit(self, event) -> Membership:
        """Queues an event and waits until the consumer has handled it."""
        self.start()
        done = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((event, done))
        return await done

    async def join(self, room_id: str) -> Membership:
        return await self.submit(LocalJoin(room_id))

    async def leave(self) -> Membership:
        if self._worker is None:
            return self.membership
        return await self.submit(LocalLeave())

    async def settle(self) -> None:
        """Waits until the queue is drained and no engine operation is in flight."""
        self.start()
        while True:
            await self._queue.join()
            pending = [t for t in self._operations if not t.done()]
            if not pending:
                if self._queue.empty():
                    return
                continue
            await asyncio.wait(pending)

    async def _run(self) -> None:
        while True:
            event, done = await self._queue.get()
            try:
                await self._handle(event)
            except Exception as e:
                logger.exception(f"[Negotiation] Failed to handle {type(event).__name__}")
                if done is not None and not done.done():
                    done.set_exception(e)
            else:
                if done is not None and not done.done():
                    done.set_result(self.membership)
            finally:
                self._queue.task_done()

    async def _handle(self, event) -> None:
        if isinstance(event, Inbound):
            handler = self._message_handlers.get(event.message.type)
            if handler is None:
                logger.warning(f"[Negotiation] Unexpected inbound {event.message.type!r}, ignoring")
                return
            room_id = getattr(event.message, "room_id", None)
            if room_id is not None and room_id != self.membership.room_id:
                logger.warning(f"[Negotiation] {event.message.type!r} for room {room_id!r} ignored")
                return
            await handler(event.message)
        elif isinstance(event, OperationCompleted):
            await self._on_operation_completed(event)
        elif isinstance(event, LocalCandidateDiscovered):
            await self._on_local_candidate(event)
        elif isinstance(event, EngineStateChanged):
            await self._on_engine_state(event)
        elif isinstance(event, LocalJoin):
            await self._on_local_join(event.room_id)
        elif isinstance(event, LocalLeave):
            await self._teardown(send_leave=True, detail="idle")
        elif isinstance(event, TransportLost):
            await self._teardown(send_leave=False, detail="disconnected", error=event.error)
        else:
            raise TypeError(f"unknown negotiation event {event!r}")

    # --- Status ---

    def _publish(self) -> None:
        if self.on_status:
            self.on_status(self.membership)

    def _set_state(self, state: ConnectionState, detail: str, **changes) -> None:
        previous = self.membership.state
        self.membership = replace(self.membership, state=state, detail=detail, **changes)
        if previous is not state:
            logger.info(f"[Negotiation] {previous.value} -> {state.value} ({detail})")
        self._publish()

    def _report(self, error: PeerCallError) -> None:
        logger.warning(f"[Negotiation] {error.kind}: {error}")
        self.membership = replace(self.membership, last_error=error.kind)
        self._publish()

    # --- Engine operations ---

    def _schedule(self, operation: str, factory: Callable[[], Awaitable[Any]]) -> None:
        generation = self.connection.generation
        previous = self._last_operation

        async def run():
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            try:
                result = await factory()
            except PeerCallError as e:
                self.post(OperationCompleted(generation, operation, error=e))
            except Exception as e:
                logger.exception(f"[Negotiation] Engine {operation} crashed")
                self.post(OperationCompleted(generation, operation, error=NegotiationError(str(e))))
            else:
                self.post(OperationCompleted(generation, operation, result=result))

        task = asyncio.create_task(run())
        self._operations.add(task)
        task.add_done_callback(self._operations.discard)
        self._last_operation = task

    def _cancel_operations(self) -> None:
        for task in list(self._operations):
            task.cancel()
        self._operations.clear()
        self._last_operation = None

    async def _ensure_connection(self) -> bool:
        try:
            self.connection.create()
        except ResourceError as e:
            await self._teardown(send_leave=True, detail="idle", error=e)
            return False
        return True

    # --- Local triggers ---

    async def _on_local_join(self, room_id: str) -> None:
        if self.state is not ConnectionState.IDLE:
            logger.warning(f"[Negotiation] join({room_id}) ignored while {self.state.value}")
            return
        self.membership = Membership(room_id=room_id)
        self._attempt = None
        try:
            self.connection.create()
        except ResourceError as e:
            self._report(e)
            return
        await self.transport.send(JoinMessage(room_id=room_id))
        self._set_state(ConnectionState.JOINING, f"joining room {room_id}")

    # --- Relay messages ---

    async def _on_joined(self, message) -> None:
        if self.state not in (ConnectionState.JOINING, ConnectionState.JOINED):
            logger.info(f"[Negotiation] joined ignored while {self.state.value}")
            return
        self._set_state(ConnectionState.JOINED, f"joined room ({message.count})", participants=message.count)

    async def _on_peer_joined(self, message) -> None:
        if self.state is not ConnectionState.JOINED:
            return
        self._set_state(ConnectionState.JOINED, "peer joined, waiting for ready", participants=2)

    async def _on_ready(self, message) -> None:
        if self.state is not ConnectionState.JOINED:
            logger.info(f"[Negotiation] ready ignored while {self.state.value}")
            return
        if not await self._ensure_connection():
            return
        self._attempt = _Attempt(self.connection.generation, Role.OFFERER)
        self._set_state(ConnectionState.NEGOTIATING, "creating offer")
        self._schedule(LOCAL_DESCRIPTION, lambda: self.connection.create_local_description("offer"))

    async def _on_offer(self, message) -> None:
        if self.state not in (ConnectionState.JOINED, ConnectionState.NEGOTIATING):
            logger.info(f"[Negotiation] offer ignored while {self.state.value}")
            return
        if message.sdp.type != "offer":
            await self._fail_attempt(NegotiationError(f"offer carried a {message.sdp.type!r} description"))
            return

        attempt = self._attempt
        if attempt is not None:
            if attempt.role is Role.ANSWERER:
                logger.info("[Negotiation] Duplicate offer within attempt ignored")
                return
            logger.warning("[Negotiation] Offer received while offering; answering instead")
            self._cancel_operations()
            self._attempt = None
            try:
                await self.connection.close()
            except ResourceError as e:
                await self._teardown(send_leave=True, detail="idle", error=e)
                return

        if not await self._ensure_connection():
            return
        self._attempt = _Attempt(self.connection.generation, Role.ANSWERER)
        self._set_state(ConnectionState.NEGOTIATING, "received offer")
        self._schedule(REMOTE_DESCRIPTION, lambda: self.connection.set_remote_description(message.sdp))

    async def _on_answer(self, message) -> None:
        attempt = self._attempt
        if (self.state is not ConnectionState.NEGOTIATING or attempt is None
                or attempt.role is not Role.OFFERER or not attempt.offer_sent
                or attempt.answer_received):
            logger.info(f"[Negotiation] answer ignored while {self.state.value}")
            return
        attempt.answer_received = True
        if message.sdp.type != "answer":
            await self._fail_attempt(NegotiationError(f"answer carried a {message.sdp.type!r} description"))
            return
        self._schedule(REMOTE_DESCRIPTION, lambda: self.connection.set_remote_description(message.sdp))

    async def _on_ice_candidate(self, message) -> None:
        if self.state in (ConnectionState.IDLE, ConnectionState.CLOSED):
            return
        if not self.connection.is_open:
            logger.debug("[Negotiation] Candidate for a closed attempt dropped")
            return
        self._schedule(CANDIDATE, lambda: self.connection.add_candidate(message.candidate))

    async def _on_peer_left(self, message) -> None:
        if self.state is ConnectionState.IDLE:
            return
        # frees this member's relay slot
        await self._teardown(send_leave=True, detail="peer left")

    async def _on_room_full(self, message) -> None:
        if self.state is ConnectionState.IDLE:
            return
        await self._teardown(send_leave=False, detail="room full",
                             error=RoomFullError(f"room {message.room_id} already has two members"))

    # --- Engine results ---

    async def _on_operation_completed(self, event: OperationCompleted) -> None:
        if event.generation != self.connection.generation or self._attempt_gone(event):
            logger.debug(f"[Negotiation] Dropping stale {event.operation} from gen {event.generation}")
            return
        if event.error is not None:
            if event.operation == CANDIDATE:
                self._report(event.error)
            else:
                await self._fail_attempt(event.error)
            return
        if event.operation == LOCAL_DESCRIPTION:
            await self._on_local_description(event.result)
        elif event.operation == REMOTE_DESCRIPTION:
            await self._on_remote_description(event.result)

    def _attempt_gone(self, event: OperationCompleted) -> bool:
        if self.state in (ConnectionState.IDLE, ConnectionState.CLOSED):
            return True
        return event.operation != CANDIDATE and self._attempt is None

    async def _on_local_description(self, description) -> None:
        attempt = self._attempt
        room_id = self.membership.room_id
        if attempt.role is Role.OFFERER:
            if attempt.offer_sent:
                return
            await self.transport.send(OfferMessage(room_id=room_id, sdp=description))
            attempt.offer_sent = True
            self._set_state(ConnectionState.NEGOTIATING, "sent offer")
        else:
            if attempt.answer_sent:
                return
            await self.transport.send(AnswerMessage(room_id=room_id, sdp=description))
            attempt.answer_sent = True
            self._set_state(ConnectionState.CONNECTED, "answered offer")

    async def _on_remote_description(self, rejected) -> None:
        for error in rejected or ():
            self._report(error)
        if self._attempt.role is Role.OFFERER:
            self._set_state(ConnectionState.CONNECTED, "connected (answer set)")
        else:
            self._set_state(ConnectionState.NEGOTIATING, "creating answer")
            self._schedule(LOCAL_DESCRIPTION, lambda: self.connection.create_local_description("answer"))

    async def _on_local_candidate(self, event: LocalCandidateDiscovered) -> None:
        if event.generation != self.connection.generation:
            return
        if self.state in (ConnectionState.IDLE, ConnectionState.CLOSED):
            return
        await self.transport.send(IceCandidateMessage(room_id=self.membership.room_id, candidate=event.candidate))

    async def _on_engine_state(self, event: EngineStateChanged) -> None:
        if event.generation != self.connection.generation:
            return
        if event.state == "failed" and self.state in (ConnectionState.NEGOTIATING, ConnectionState.CONNECTED):
            await self._fail_attempt(NegotiationError("peer connection failed"))

    # --- Teardown ---

    async def _fail_attempt(self, error: PeerCallError) -> None:
        """Drops the current attempt only; the room membership survives."""
        logger.warning(f"[Negotiation] Attempt failed: {error}")
        self._cancel_operations()
        self._attempt = None
        try:
            await self.connection.close()
        except ResourceError as e:
            await self._teardown(send_leave=True, detail="idle", error=e)
            return
        self._set_state(ConnectionState.JOINED, "negotiation failed, waiting for retry", last_error=error.kind)

    async def _teardown(self, send_leave: bool, detail: str, error: Optional[PeerCallError] = None) -> None:
        """Single exit path for leave, peer departure, relay loss and resource failure."""
        if self.state is ConnectionState.IDLE:
            if error is not None:
                self._report(error)
            return

        room_id = self.membership.room_id
        self._cancel_operations()
        self._attempt = None
        try:
            await self.connection.close()
        except ResourceError as e:
            logger.warning(f"[Negotiation] {e}")
            error = error or e
        if send_leave and room_id:
            await self.transport.send(LeaveMessage(room_id=room_id))

        self._set_state(ConnectionState.CLOSED, "closed")
        self.membership = Membership(detail=detail, last_error=error.kind if error else None)
        logger.info(f"[Negotiation] closed -> idle ({detail})")
        self._publish()
