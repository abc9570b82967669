"""Shared fixtures: an in-memory store, a recording transport and a wired engine."""

import asyncio
import json
from datetime import timezone
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from phantom_chat.chat import ChatEngine
from phantom_chat.errors import PersistenceError, TransportError
from phantom_chat.models.events import NodeEvent
from phantom_chat.models.message import StoredMessage
from phantom_chat.store.memory import MemoryStore
from phantom_chat.transport.base import EventHandler, Transport

LOCAL_PEER = "12D3KooWLocalPeerAAAAAAAA"
REMOTE_PEER = "12D3KooWRemotePeerBBBBBBB"
OTHER_PEER = "12D3KooWOtherPeerCCCCCCCC"


class FakeTransport(Transport):
    """Records outbound calls; ``emit`` plays node events to registered handlers."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.typing: list[tuple[str, bool]] = []
        self.dialed: list[str] = []
        self.send_error: Optional[str] = None
        self.send_delay = 0.0
        self._handlers: list[EventHandler] = []

    async def send(self, channel: str, payload: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error:
            raise TransportError(self.send_error)
        self.sent.append((channel, payload))

    async def send_typing(self, channel: str, is_typing: bool) -> None:
        self.typing.append((channel, is_typing))

    async def connect_peer(self, address: str) -> None:
        if self.send_error:
            raise TransportError(self.send_error)
        self.dialed.append(address)

    def add_event_handler(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)
        return lambda: self._handlers.remove(handler)

    def emit(self, event: str, data: Any) -> None:
        for handler in list(self._handlers):
            handler(event, data)

    def sent_envelopes(self) -> list[dict[str, Any]]:
        return [json.loads(payload) for _, payload in self.sent]


class FailingStore(MemoryStore):
    """MemoryStore whose writes can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    def _check(self) -> None:
        if self.fail_writes:
            raise PersistenceError("disk I/O error")

    async def save_message(self, message: StoredMessage) -> bool:
        self._check()
        return await super().save_message(message)

    async def update_message_content(self, uuid, content, last_edited):
        self._check()
        await super().update_message_content(uuid, content, last_edited)

    async def update_message_reactions(self, uuid, reactions):
        self._check()
        await super().update_message_reactions(uuid, reactions)

    async def delete_message(self, uuid):
        self._check()
        return await super().delete_message(uuid)


def incoming(content: Any, channel: str = REMOTE_PEER, sender: str = REMOTE_PEER) -> dict[str, str]:
    """A new-message event payload; dict content is serialized like a peer would."""
    if not isinstance(content, str):
        content = json.dumps(content)
    return {"sender": sender, "content": content, "channel": channel}


@pytest.fixture
def store():
    return FailingStore()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest_asyncio.fixture
async def engine(store, transport):
    eng = ChatEngine(
        store,
        transport,
        local_peer_id=LOCAL_PEER,
        tz=timezone.utc,
        idle_delay_s=0.05,
        expiry_check_s=0.05,
        stale_after_s=0.04,
        send_timeout_s=0.5,
    )
    await eng.start()
    yield eng
    await eng.close()


@pytest.fixture
def events(engine):
    """UI events raised by the engine, in order."""
    seen: list[tuple[str, Any]] = []
    engine.add_listener(lambda event, data: seen.append((event, data)))
    return seen


async def deliver(engine: ChatEngine, transport: FakeTransport, payload: dict[str, str]) -> None:
    transport.emit(NodeEvent.NEW_MESSAGE, payload)
    await engine.drain()
