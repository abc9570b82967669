"""
Chat engine. Routes node events and UI actions through the dispatcher,
projector, outbox and typing state machines.

Node events arrive through a synchronous handler; inbound messages are applied
in tasks so the handler never blocks. Mutations of the same message are
serialized by uuid, different messages proceed independently.
"""

import asyncio
import json
import logging
from datetime import tzinfo
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from phantom_chat.channels import GLOBAL_CHANNEL, to_wire
from phantom_chat.dispatcher import LOCAL_LABEL, Dispatcher
from phantom_chat.errors import PersistenceError, PhantomChatError, TransportError
from phantom_chat.keyed_lock import KeyedLock
from phantom_chat.models.envelope import MessageType, ReplyReference
from phantom_chat.models.events import IncomingMessage, NodeEvent, TypingSignal, UIEvent
from phantom_chat.models.message import Contact, DeliveryState, ViewMessage, ViewRow
from phantom_chat.outbox import DEFAULT_SEND_TIMEOUT_S, Attachment, Outbox, encode_attachment, read_attachment
from phantom_chat.projector import ViewProjector
from phantom_chat.store.base import DISPLAY_NAME_KEY, MessageStore
from phantom_chat.transport.base import EventHandler, Transport
from phantom_chat.transport.envelope import build_envelope, now_ms
from phantom_chat.typing_state import (
    DEFAULT_EXPIRY_CHECK_S,
    DEFAULT_IDLE_DELAY_S,
    DEFAULT_STALE_AFTER_S,
    TypingNotifier,
    TypingTracker,
)

logger = logging.getLogger(__name__)

SECURE_CONNECTION_NOTICE = "Secure connection established"


class ChatEngine:
    def __init__(
        self,
        store: MessageStore,
        transport: Transport,
        *,
        local_peer_id: Optional[str] = None,
        tz: Optional[tzinfo] = None,
        idle_delay_s: float = DEFAULT_IDLE_DELAY_S,
        expiry_check_s: float = DEFAULT_EXPIRY_CHECK_S,
        stale_after_s: float = DEFAULT_STALE_AFTER_S,
        send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S,
    ):
        self._store = store
        self._transport = transport
        self._listeners: list[EventHandler] = []
        self._tasks: set[asyncio.Task] = set()
        self._remove_handler: Optional[Callable[[], None]] = None

        self.locks = KeyedLock()
        self.projector = ViewProjector(store, tz=tz)
        self.dispatcher = Dispatcher(
            store, self.projector, self.locks,
            local_peer_id=local_peer_id,
            on_notify=lambda: self._emit(UIEvent.NOTIFY, None),
        )
        self.outbox = Outbox(store, transport, self.projector, self.locks,
                             send_timeout_s=send_timeout_s, on_event=self._emit)
        self.typing = TypingNotifier(transport.send_typing, idle_delay_s=idle_delay_s)
        self.typing_peers = TypingTracker(
            on_change=lambda peer, typing: self._emit(UIEvent.TYPING_CHANGED, {"peer_id": peer, "is_typing": typing}),
            expiry_check_s=expiry_check_s,
            stale_after_s=stale_after_s,
        )

        self.active_channel = GLOBAL_CHANNEL
        self.active_peer: Optional[str] = None
        self.peers: list[str] = []
        self.listen_addresses: list[str] = []
        self.contacts: list[Contact] = []
        self.display_name: Optional[str] = None

    # -- lifecycle ---------------------------------------------------------------

    @property
    def local_peer_id(self) -> Optional[str]:
        return self.dispatcher.local_peer_id

    @property
    def current_channel(self) -> str:
        """The channel on screen: the selected peer, else the selected channel."""
        return self.active_peer or self.active_channel

    async def start(self) -> None:
        """Load contacts and profile, show the default channel, subscribe to node events."""
        await self.reload_contacts()
        try:
            self.display_name = await self._store.get_setting(DISPLAY_NAME_KEY)
        except PersistenceError as e:
            logger.error(f"Failed to load display name: {e}")
        await self.projector.load(self.current_channel)
        if self._remove_handler is None:
            self._remove_handler = self._transport.add_event_handler(self.handle_event)

    async def drain(self) -> None:
        """Wait until inbound events and local sends started so far have settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.outbox.drain()
        await self.typing.flush()

    async def close(self) -> None:
        if self._remove_handler:
            self._remove_handler()
            self._remove_handler = None
        await self.outbox.drain()
        self.typing.close()
        self.typing_peers.close()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def add_listener(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to UI events. Returns a cleanup function."""
        self._listeners.append(handler)
        def remove() -> None:
            try:
                self._listeners.remove(handler)
            except ValueError:
                pass
        return remove

    def _emit(self, event: str, data: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception:
                logger.exception(f"Listener failed for {event}")

    # -- node events -------------------------------------------------------------

    def handle_event(self, event: str, data: Any) -> None:
        """Transport callback. Never raises."""
        if event == NodeEvent.NEW_MESSAGE:
            task = asyncio.get_running_loop().create_task(self.process_event(event, data))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return
        try:
            self._handle_control_event(event, data)
        except ValidationError as e:
            logger.warning(f"Malformed {event} event dropped: {e.error_count()} error(s)")
        except Exception:
            logger.exception(f"Failed to handle {event}")

    async def process_event(self, event: str, data: Any) -> bool:
        """Apply one node event to completion. Returns True if the view or store changed."""
        if event != NodeEvent.NEW_MESSAGE:
            self.handle_event(event, data)
            return False
        try:
            message = IncomingMessage.model_validate(_as_payload(data))
        except ValidationError as e:
            logger.warning(f"Malformed {event} event dropped: {e.error_count()} error(s)")
            return False
        try:
            changed = await self.dispatcher.handle_incoming(message)
        except Exception:
            logger.exception("Failed to apply inbound message")
            return False
        if changed:
            self._emit(UIEvent.VIEW_CHANGED, self.current_channel)
        return changed

    def _handle_control_event(self, event: str, data: Any) -> None:
        if event == NodeEvent.PEER_TYPING:
            signal = TypingSignal.model_validate(_as_payload(data))
            self.typing_peers.signal(signal.peer_id, signal.is_typing)
        elif event == NodeEvent.LOCAL_PEER_ID:
            self.dispatcher.local_peer_id = str(data)
            self._emit(UIEvent.LOCAL_PEER_ID, self.dispatcher.local_peer_id)
        elif event == NodeEvent.PEER_DISCOVERED:
            if data not in self.peers:
                self.peers.append(str(data))
                self._emit(UIEvent.PEERS_CHANGED, list(self.peers))
        elif event == NodeEvent.PEER_EXPIRED:
            if data in self.peers:
                self.peers.remove(data)
                self._emit(UIEvent.PEERS_CHANGED, list(self.peers))
        elif event == NodeEvent.LISTEN_ADDRESS:
            if data not in self.listen_addresses:
                self.listen_addresses.append(str(data))
                self._emit(UIEvent.ADDRESSES_CHANGED, list(self.listen_addresses))
        elif event == NodeEvent.HANDSHAKE_COMPLETE:
            logger.info(f"Secure connection established with {data}")
            notice = self.projector.add_notice(str(data), SECURE_CONNECTION_NOTICE)
            if notice is not None:
                self._emit(UIEvent.NOTICE, notice)
        else:
            logger.debug(f"Ignoring node event {event}")

    # -- navigation --------------------------------------------------------------

    async def select_channel(self, channel: str) -> list[ViewMessage]:
        self.typing.stop()
        self.active_channel = channel
        self.active_peer = None
        messages = await self.projector.load(channel)
        self._emit(UIEvent.VIEW_CHANGED, channel)
        return messages

    async def select_peer(self, peer_id: str) -> list[ViewMessage]:
        self.typing.stop()
        self.active_peer = peer_id
        messages = await self.projector.load(peer_id)
        self._emit(UIEvent.VIEW_CHANGED, peer_id)
        return messages

    def rows(self, query: Optional[str] = None) -> list[ViewRow]:
        return self.projector.rows(query)

    # -- composing and sending ---------------------------------------------------

    def input_changed(self, text: str) -> None:
        self.typing.input_changed(self.active_peer, text)

    def is_peer_typing(self, peer_id: Optional[str] = None) -> bool:
        peer_id = peer_id or self.active_peer
        return bool(peer_id) and self.typing_peers.is_typing(peer_id)

    async def send_message(self, text: str, reply_to: Optional[ReplyReference] = None) -> Optional[ViewMessage]:
        if not text.strip():
            return None
        self.typing.stop()
        return await self.outbox.send(self.current_channel, text, sender=LOCAL_LABEL, reply_to=reply_to)

    async def send_file(self, path: Union[str, Path], reply_to: Optional[ReplyReference] = None) -> Optional[ViewMessage]:
        try:
            attachment = await read_attachment(Path(path))
        except PhantomChatError as e:
            self._emit(UIEvent.ALERT, str(e))
            return None
        return await self.outbox.send_attachment(self.current_channel, attachment,
                                                 sender=LOCAL_LABEL, reply_to=reply_to)

    async def send_audio(self, audio: Union[bytes, str, Path], mime: str = "audio/webm") -> Optional[ViewMessage]:
        try:
            if isinstance(audio, bytes):
                attachment = encode_attachment(audio, mime, message_type=MessageType.AUDIO)
            else:
                attachment = await read_attachment(Path(audio))
                attachment.type = MessageType.AUDIO
        except PhantomChatError as e:
            self._emit(UIEvent.ALERT, str(e))
            return None
        return await self.outbox.send_attachment(self.current_channel, attachment, sender=LOCAL_LABEL)

    async def send_attachment(self, attachment: Attachment) -> ViewMessage:
        return await self.outbox.send_attachment(self.current_channel, attachment, sender=LOCAL_LABEL)

    async def retry(self, uuid: str) -> Optional[DeliveryState]:
        return await self.outbox.retry(uuid)

    # -- local edits -------------------------------------------------------------

    async def edit_message(self, uuid: str, content: str) -> bool:
        edited_at = now_ms()
        if not await self.dispatcher.edit(uuid, content, edited_at=edited_at):
            return False
        await self._broadcast(MessageType.EDIT, target_uuid=uuid, content=content, timestamp=edited_at)
        return True

    async def react(self, uuid: str, emoji: str) -> bool:
        if not await self.dispatcher.react(uuid, emoji):
            return False
        await self._broadcast(MessageType.REACTION, target_uuid=uuid, content=emoji)
        return True

    async def delete_message(self, uuid: str) -> bool:
        if not await self.dispatcher.delete(uuid):
            return False
        await self._broadcast(MessageType.DELETE, target_uuid=uuid)
        return True

    async def _broadcast(self, message_type: MessageType, **fields: Any) -> None:
        channel = self.current_channel
        self._emit(UIEvent.VIEW_CHANGED, channel)
        try:
            await self._transport.send(to_wire(channel), build_envelope(message_type, **fields))
        except TransportError as e:
            logger.error(f"Failed to send {message_type.value} to {channel}: {e}")
            notice = self.projector.add_notice(channel, f"Could not deliver {message_type.value} to peers: {e}")
            if notice is not None:
                self._emit(UIEvent.NOTICE, notice)

    # -- peers, contacts and profile ---------------------------------------------

    async def connect_peer(self, address: str) -> bool:
        try:
            await self._transport.connect_peer(address)
        except TransportError as e:
            logger.error(f"Connection to {address} failed: {e}")
            self._emit(UIEvent.ALERT, f"Connection failed: {e}")
            return False
        return True

    async def reload_contacts(self) -> list[Contact]:
        try:
            self.contacts = await self._store.get_contacts()
        except PersistenceError as e:
            logger.error(f"Failed to load contacts: {e}")
        self.dispatcher.set_contacts(self.contacts)
        self._emit(UIEvent.CONTACTS_CHANGED, list(self.contacts))
        return self.contacts

    async def add_contact(self, peer_id: str, name: str) -> list[Contact]:
        try:
            await self._store.add_contact(peer_id, name)
        except PersistenceError as e:
            logger.error(f"Failed to add contact {peer_id}: {e}")
        return await self.reload_contacts()

    async def delete_contact(self, peer_id: str) -> list[Contact]:
        try:
            await self._store.delete_contact(peer_id)
        except PersistenceError as e:
            logger.error(f"Failed to delete contact {peer_id}: {e}")
        return await self.reload_contacts()

    def peer_display_name(self, peer_id: str) -> str:
        for contact in self.contacts:
            if contact.peer_id == peer_id:
                return contact.name
        return f"Peer {peer_id[:8]}..."

    def is_contact(self, peer_id: str) -> bool:
        return any(c.peer_id == peer_id for c in self.contacts)

    async def set_display_name(self, name: str) -> None:
        self.display_name = name
        try:
            await self._store.save_setting(DISPLAY_NAME_KEY, name)
        except PersistenceError as e:
            logger.error(f"Failed to save display name: {e}")

def _as_payload(data: Any) -> Any:
    """Node events carry JSON either as objects or as serialized strings."""
    if isinstance(data, (str, bytes)):
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data
