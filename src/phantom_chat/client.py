"""
AsyncPhantomChat wires config, store, node transport and engine together.
"""

import logging
from typing import Optional

from phantom_chat.chat import ChatEngine
from phantom_chat.config import ChatConfig, load_config
from phantom_chat.errors import TransportError
from phantom_chat.models.events import NodeEvent
from phantom_chat.store.base import MessageStore
from phantom_chat.store.sqlite import SqliteStore
from phantom_chat.transport.node import NodeTransport

logger = logging.getLogger(__name__)


class AsyncPhantomChat:
    """Async phantom chat client (primary)."""

    def __init__(
        self,
        config: Optional[ChatConfig] = None,
        store: Optional[MessageStore] = None,
        transport: Optional[NodeTransport] = None,
    ):
        self.config = config or load_config()
        self.store = store or SqliteStore(self.config.db_path)
        self.transport = transport or NodeTransport(self.config.node_url, ready_timeout=self.config.ready_timeout_s)
        self.engine = ChatEngine(
            self.store,
            self.transport,
            idle_delay_s=self.config.typing_idle_s,
            expiry_check_s=self.config.typing_expiry_check_s,
            stale_after_s=self.config.typing_stale_after_s,
            send_timeout_s=self.config.send_timeout_s,
        )

    @property
    def connected(self) -> bool:
        return self.transport.connected

    async def connect(self) -> None:
        """Start the engine, open the node event stream and fetch node identity."""
        await self.engine.start()
        await self.transport.open()
        try:
            peer_id = await self.transport.local_peer_id()
            if peer_id:
                self.engine.handle_event(NodeEvent.LOCAL_PEER_ID, peer_id)
            for addr in await self.transport.listen_addresses():
                self.engine.handle_event(NodeEvent.LISTEN_ADDRESS, addr)
        except TransportError as e:
            # The node pushes both again over the event stream once known.
            logger.warning(f"Failed to get node info: {e}")

    async def disconnect(self) -> None:
        await self.engine.close()
        await self.transport.close()
        await self.store.close()
