"""
Socket.IO event stream from the local P2P node.

Connection: {node_url}/events/socket.io/. Waits for the node's ``ready``
event before resolving connect().
"""

import asyncio
import logging
from typing import Any, Callable, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError

from phantom_chat.errors import TransportError
from phantom_chat.transport.base import EventHandler

logger = logging.getLogger(__name__)

SOCKETIO_PATH = "/events/socket.io/"
_LIFECYCLE_EVENTS = ("connect", "disconnect", "connect_error", "ready")


class SocketIOManager:
    def __init__(
        self,
        node_url: str,
        transports: Optional[list[str]] = None,
        ready_timeout: float = 15.0,
    ):
        self._node_url = node_url
        self._transports = transports or ["websocket"]
        self._ready_timeout = ready_timeout
        self._sio: Optional[socketio.AsyncClient] = None
        self._connected = False
        self._handlers: list[EventHandler] = []

    @property
    def connected(self) -> bool:
        return self._connected and self._sio is not None and self._sio.connected

    def add_event_handler(self, handler: EventHandler) -> Callable[[], None]:
        """Add an event handler. Returns a cleanup function."""
        self._handlers.append(handler)
        def remove() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass
        return remove

    def dispatch(self, event: str, data: Any) -> None:
        if event in _LIFECYCLE_EVENTS:
            return
        for handler in list(self._handlers):
            try:
                handler(event, data)
            except Exception:
                logger.exception(f"Event handler failed for {event}")

    async def connect(self) -> None:
        if self._sio and self._sio.connected:
            return

        self._sio = socketio.AsyncClient(reconnection=True)
        node_ready = asyncio.Event()

        @self._sio.event
        async def connect() -> None:
            logger.debug(f"Event stream open at {self._node_url}")

        @self._sio.on("ready")
        async def on_ready(*_args: Any) -> None:
            self._connected = True
            node_ready.set()

        @self._sio.on("*")
        async def on_any(event: str, data: Any = None) -> None:
            self.dispatch(event, data)

        @self._sio.event
        async def disconnect(_reason: str = "") -> None:
            self._connected = False
            logger.warning("Node event stream disconnected")

        try:
            await self._sio.connect(
                self._node_url,
                transports=self._transports,
                socketio_path=SOCKETIO_PATH,
            )
        except SocketIOConnectionError as e:
            raise TransportError(f"Cannot reach node at {self._node_url}: {e}") from e

        try:
            await asyncio.wait_for(node_ready.wait(), timeout=self._ready_timeout)
        except asyncio.TimeoutError:
            await self._sio.disconnect()
            raise TransportError(f"Timed out waiting for 'ready' event after {self._ready_timeout}s")

    async def disconnect(self) -> None:
        self._connected = False
        if self._sio:
            await self._sio.disconnect()
            self._sio = None
