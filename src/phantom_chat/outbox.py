"""
Outbox for optimistic local sends.

A message is shown before any I/O with ``delivery=pending``. The store write
and the transport send then run concurrently in a background task, each under
a timeout:

    pending --both succeed--> confirmed   (store status -> sent)
    pending --either fails--> failed      (retry() re-runs what failed)

Both effects are idempotent by uuid (insert-if-absent; receivers dedupe), so a
retry never duplicates the message.
"""

import asyncio
import base64
import logging
import mimetypes
from pathlib import Path
from typing import Any, Callable, Optional

from phantom_chat.channels import to_wire
from phantom_chat.errors import PermissionDeniedError, PersistenceError, PhantomChatError, TransportError
from phantom_chat.keyed_lock import KeyedLock
from phantom_chat.models.envelope import MessageType, ReplyReference
from phantom_chat.models.events import UIEvent
from phantom_chat.models.message import DeliveryState, MessageStatus, StoredMessage, ViewMessage
from phantom_chat.projector import ViewProjector
from phantom_chat.store.base import MessageStore
from phantom_chat.transport.base import Transport
from phantom_chat.transport.envelope import build_envelope, new_message_id, now_ms

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT_S = 10.0
MAX_ATTACHMENT_BYTES = 2 * 1024 * 1024

HANDSHAKE_NOTICE = "Establishing a secure connection... Retry sending once it is confirmed."


class OutgoingMessage:
    __slots__ = ("message", "payload", "saved", "sent", "state")

    def __init__(self, message: StoredMessage, payload: str):
        self.message = message
        self.payload = payload
        self.saved = False
        self.sent = False
        self.state = DeliveryState.PENDING

    def __repr__(self) -> str:
        return f"OutgoingMessage(uuid={self.message.uuid!r}, state={self.state.value!r})"


class Attachment:
    __slots__ = ("type", "data_url", "file_name", "file_size")

    def __init__(self, type: MessageType, data_url: str, file_name: Optional[str], file_size: str):
        self.type = type
        self.data_url = data_url
        self.file_name = file_name
        self.file_size = file_size


def format_size(num_bytes: int) -> str:
    return f"{num_bytes / 1024:.1f} KB"


def encode_attachment(data: bytes, mime: str, file_name: Optional[str] = None,
                      message_type: Optional[MessageType] = None) -> Attachment:
    if len(data) > MAX_ATTACHMENT_BYTES:
        raise PhantomChatError("attachment_too_large",
                               f"File is too large ({format_size(len(data))}, max 2 MB)")
    if message_type is None:
        message_type = MessageType.IMAGE if mime.startswith("image/") else MessageType.FILE
    data_url = f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"
    return Attachment(message_type, data_url, file_name, format_size(len(data)))


async def read_attachment(path: Path) -> Attachment:
    """Read a local file into an attachment. Access failures raise PermissionDeniedError."""
    try:
        size = path.stat().st_size
        if size > MAX_ATTACHMENT_BYTES:
            raise PhantomChatError("attachment_too_large", f"File is too large ({format_size(size)}, max 2 MB)")
        data = await asyncio.to_thread(path.read_bytes)
    except PermissionError as e:
        raise PermissionDeniedError(f"Permission denied reading {path.name}") from e
    except OSError as e:
        raise PermissionDeniedError(f"Cannot read {path.name}: {e.strerror or e}") from e
    mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return encode_attachment(data, mime, file_name=path.name)


class Outbox:
    def __init__(
        self,
        store: MessageStore,
        transport: Transport,
        projector: ViewProjector,
        locks: KeyedLock,
        send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S,
        on_event: Optional[Callable[[str, Any], None]] = None,
    ):
        self._store = store
        self._transport = transport
        self._projector = projector
        self._locks = locks
        self._send_timeout_s = send_timeout_s
        self._on_event = on_event
        self._outgoing: dict[str, OutgoingMessage] = {}
        self._tasks: set[asyncio.Task] = set()

    def get(self, uuid: str) -> Optional[OutgoingMessage]:
        return self._outgoing.get(uuid)

    @property
    def failed(self) -> list[str]:
        return [uuid for uuid, item in self._outgoing.items() if item.state == DeliveryState.FAILED]

    async def send(
        self,
        channel: str,
        content: str,
        *,
        sender: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to: Optional[ReplyReference] = None,
        file_name: Optional[str] = None,
        file_size: Optional[str] = None,
    ) -> ViewMessage:
        """Show the message immediately; persisting and sending continue in the background."""
        message = StoredMessage(
            uuid=new_message_id(),
            sender=sender,
            content=content,
            channel=channel,
            timestamp=now_ms(),
            reply_to=reply_to,
            type=message_type,
            status=MessageStatus.SENDING,
            file_name=file_name,
            file_size=file_size,
        )
        payload = build_envelope(
            message_type,
            content=content,
            message_id=message.uuid,
            reply_to=reply_to,
            file_name=file_name,
            file_size=file_size,
            timestamp=message.timestamp,
        )
        view = self._projector.view_of(message).model_copy(update={"delivery": DeliveryState.PENDING})
        self._projector.add_optimistic(view)
        self._outgoing[message.uuid] = OutgoingMessage(message, payload)
        self._emit(UIEvent.VIEW_CHANGED, channel)

        task = asyncio.get_running_loop().create_task(self._deliver(message.uuid))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return view

    async def drain(self) -> None:
        """Wait until every send started so far is confirmed or failed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def send_attachment(self, channel: str, attachment: Attachment, *, sender: str,
                              reply_to: Optional[ReplyReference] = None) -> ViewMessage:
        return await self.send(
            channel,
            attachment.data_url,
            sender=sender,
            message_type=attachment.type,
            reply_to=reply_to,
            file_name=attachment.file_name,
            file_size=attachment.file_size,
        )

    async def retry(self, uuid: str) -> Optional[DeliveryState]:
        item = self._outgoing.get(uuid)
        if item is None or item.state != DeliveryState.FAILED:
            return None
        return await self._deliver(uuid)

    async def _deliver(self, uuid: str) -> DeliveryState:
        item = self._outgoing[uuid]
        item.state = DeliveryState.PENDING
        self._projector.set_delivery(uuid, DeliveryState.PENDING, MessageStatus.SENDING)

        item.saved, item.sent = await asyncio.gather(self._save(item), self._send(item))

        if item.saved and item.sent:
            item.state = DeliveryState.CONFIRMED
            del self._outgoing[uuid]
            self._projector.set_delivery(uuid, DeliveryState.CONFIRMED, MessageStatus.SENT)
            async with self._locks.hold(uuid):
                try:
                    await self._store.update_message_status(uuid, MessageStatus.SENT)
                except PersistenceError as e:
                    logger.error(f"Failed to mark {uuid} as sent: {e}")
        else:
            item.state = DeliveryState.FAILED
            self._projector.set_delivery(uuid, DeliveryState.FAILED)
            logger.warning(f"Message {uuid} failed (saved={item.saved}, sent={item.sent})")

        self._emit(UIEvent.DELIVERY_CHANGED, {"uuid": uuid, "delivery": item.state})
        self._emit(UIEvent.VIEW_CHANGED, item.message.channel)
        return item.state

    async def _save(self, item: OutgoingMessage) -> bool:
        if item.saved:
            return True
        uuid = item.message.uuid
        async with self._locks.hold(uuid):
            try:
                # False means the row already exists, which is as good as saved.
                await asyncio.wait_for(self._store.save_message(item.message), timeout=self._send_timeout_s)
            except PersistenceError as e:
                logger.error(f"Failed to save message {uuid}: {e}")
                return False
            except asyncio.TimeoutError:
                logger.error(f"Timed out saving message {uuid}")
                return False
        return True

    async def _send(self, item: OutgoingMessage) -> bool:
        if item.sent:
            return True
        channel = item.message.channel
        try:
            await asyncio.wait_for(self._transport.send(to_wire(channel), item.payload),
                                   timeout=self._send_timeout_s)
        except TransportError as e:
            logger.error(f"Failed to send message {item.message.uuid}: {e}")
            self._notice(channel, HANDSHAKE_NOTICE if e.handshake_pending else f"Message not delivered: {e}")
            return False
        except asyncio.TimeoutError:
            logger.error(f"Timed out sending message {item.message.uuid}")
            self._notice(channel, f"Message not delivered: no answer from node after {self._send_timeout_s:g}s")
            return False
        return True

    def _notice(self, channel: str, text: str) -> None:
        notice = self._projector.add_notice(channel, text)
        if notice is not None:
            self._emit(UIEvent.NOTICE, notice)

    def _emit(self, event: str, data: Any) -> None:
        if self._on_event:
            self._on_event(event, data)
