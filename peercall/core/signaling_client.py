# core/signaling_client.py
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import TransportError, UnknownMessageError
from ..schemas import MESSAGE_TYPES, dump_message, parse_message

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class SignalingClient:
    """Manages the WebSocket connection to the rendezvous relay.

    Inbound frames are validated into SignalMessage variants and handed to the
    handler subscribed for their tag, in the order the relay delivered them.
    Nothing here retries: a dropped channel is reported once through the
    ``on_disconnect`` handlers and recovery is left to the caller.
    """

    def __init__(self, server_url: str, open_timeout: float = 10.0):
        self.url = server_url
        self.open_timeout = open_timeout
        self.ws = None
        self._handlers: Dict[str, Handler] = {}
        self._disconnect_handlers: List[Handler] = []
        self._listen_task: Optional[asyncio.Task] = None
        self._is_connected = False
        self._closing = False

    @property
    def is_connected(self) -> bool:
        """Returns the current connection status."""
        return self._is_connected

    def subscribe(self, message_type: str, handler: Handler) -> None:
        """Registers the handler for one message tag, replacing any previous one."""
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"unknown signaling message type: {message_type!r}")
        self._handlers[message_type] = handler

    def on_disconnect(self, handler: Handler) -> None:
        self._disconnect_handlers.append(handler)

    async def connect(self):
        """Opens the WebSocket and starts the listen loop."""
        if self._is_connected:
            return
        logger.info(f"[Signaling] Connecting to {self.url}")
        try:
            headers = {"Origin": "http://localhost"}
            self.ws = await websockets.connect(
                self.url, additional_headers=headers, open_timeout=self.open_timeout
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._is_connected = False
            logger.warning(f"[Signaling] Connection failed: {e}")
            raise TransportError(f"relay unreachable at {self.url}: {e}") from e

        self._is_connected = True
        self._closing = False
        self._listen_task = asyncio.create_task(self.listen())
        logger.info("[Signaling] Connection successful.")

    async def listen(self):
        """Dispatches incoming messages until the channel closes."""
        if not self.ws:
            return
        try:
            async for raw in self.ws:
                try:
                    message = parse_message(raw)
                except UnknownMessageError as e:
                    logger.warning(f"[Signaling] Dropping frame: {e}")
                    continue
                await self._dispatch(message)
        except ConnectionClosed as e:
            logger.info(f"[Signaling] Connection closed ({e.rcvd.code if e.rcvd else 'no close frame'}).")
        finally:
            self._is_connected = False
            if not self._closing:
                await self._notify_disconnect()

    async def _dispatch(self, message) -> None:
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.debug(f"[Signaling] No subscriber for {message.type!r}")
            return
        logger.debug(f"[Signaling] <- {message.type}")
        try:
            result = handler(message)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"[Signaling] Handler for {message.type!r} failed")

    async def _notify_disconnect(self) -> None:
        for handler in list(self._disconnect_handlers):
            result = handler(TransportError(f"relay connection to {self.url} lost"))
            if inspect.isawaitable(result):
                await result

    async def send(self, message) -> None:
        """Sends a SignalMessage as JSON; a closed channel is reported by listen()."""
        if not (self.ws and self._is_connected):
            logger.warning(f"[Signaling] Not connected, dropping outbound {message.type!r}")
            return
        try:
            await self.ws.send(dump_message(message))
            logger.debug(f"[Signaling] -> {message.type}")
        except ConnectionClosed:
            self._is_connected = False
            logger.warning("[Signaling] Attempted to send on a closed connection.")

    async def disconnect(self) -> None:
        """Closes the WebSocket connection; safe to call repeatedly."""
        self._closing = True
        self._is_connected = False
        ws, self.ws = self.ws, None
        task, self._listen_task = self._listen_task, None
        if ws is not None:
            await ws.close()
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
