"""
Transport backed by the local P2P node: commands over REST, events over Socket.IO.
"""

from typing import Callable, Optional

from phantom_chat.transport.base import EventHandler, Transport
from phantom_chat.transport.http import DEFAULT_NODE_URL, HttpClient
from phantom_chat.transport.socketio import SocketIOManager


class NodeTransport(Transport):
    def __init__(
        self,
        node_url: str = DEFAULT_NODE_URL,
        http: Optional[HttpClient] = None,
        events: Optional[SocketIOManager] = None,
        ready_timeout: float = 15.0,
    ):
        self.http = http or HttpClient(base_url=node_url)
        self.events = events or SocketIOManager(node_url, ready_timeout=ready_timeout)

    @property
    def connected(self) -> bool:
        return self.events.connected

    async def open(self) -> None:
        await self.events.connect()

    async def close(self) -> None:
        await self.events.disconnect()
        await self.http.close()

    async def send(self, channel: str, payload: str) -> None:
        await self.http.post("/send", {"channel": channel, "message": payload})

    async def send_typing(self, channel: str, is_typing: bool) -> None:
        await self.http.post("/typing", {"channel": channel, "isTyping": is_typing})

    async def connect_peer(self, address: str) -> None:
        await self.http.post("/dial", {"addr": address})

    async def local_peer_id(self) -> Optional[str]:
        peer_id = await self.http.get("/peer-id")
        return peer_id or None

    async def listen_addresses(self) -> list[str]:
        return list(await self.http.get("/listen-addresses") or [])

    def add_event_handler(self, handler: EventHandler) -> Callable[[], None]:
        return self.events.add_event_handler(handler)
