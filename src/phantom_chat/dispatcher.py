"""
Operation dispatcher: applies decoded envelopes to the store and the view.

| Operation | Precondition        | Effect                                        |
|-----------|---------------------|-----------------------------------------------|
| Post      | uuid not seen       | insert row; append to view if channel active  |
| Edit      | target exists       | content + last_edited (last-writer-wins)      |
| Delete    | target exists       | remove row and view entry, tombstone uuid     |
| React     | target exists       | toggle reactor in reactions[emoji]            |

Unknown targets are silent no-ops. Every mutation of one uuid runs under that
uuid's lock, and the store and view are both updated from the single result
computed under it. View effects are applied first; a failed store write is
logged and not rolled back.
"""

import logging
from typing import Awaitable, Callable, Iterable, Optional, Union

from phantom_chat.channels import to_local
from phantom_chat.errors import PersistenceError, TargetNotFoundError
from phantom_chat.keyed_lock import KeyedLock
from phantom_chat.models.envelope import (
    DeleteEnvelope,
    EditEnvelope,
    Envelope,
    MessageType,
    PostEnvelope,
    RawEnvelope,
    ReactionEnvelope,
)
from phantom_chat.models.events import IncomingMessage
from phantom_chat.models.message import Contact, MessageStatus, StoredMessage
from phantom_chat.projector import ViewProjector
from phantom_chat.store.base import MessageStore
from phantom_chat.transport.envelope import now_ms, parse_envelope

logger = logging.getLogger(__name__)

LOCAL_LABEL = "Me"
PEER_ID_DISPLAY_LEN = 8
MAX_TOMBSTONES = 10_000


def truncate_peer_id(peer_id: str) -> str:
    if len(peer_id) <= PEER_ID_DISPLAY_LEN:
        return peer_id
    return peer_id[:PEER_ID_DISPLAY_LEN] + "..."


def toggle_reaction(reactions: dict[str, list[str]], emoji: str, reactor: str) -> dict[str, list[str]]:
    """Add or remove ``reactor`` from ``reactions[emoji]``; empty sets are pruned."""
    updated = {e: list(dict.fromkeys(who)) for e, who in reactions.items()}
    reactors = updated.get(emoji, [])
    if reactor in reactors:
        reactors.remove(reactor)
    else:
        reactors.append(reactor)
    if reactors:
        updated[emoji] = reactors
    else:
        updated.pop(emoji, None)
    return updated


class Dispatcher:
    def __init__(
        self,
        store: MessageStore,
        projector: ViewProjector,
        locks: Optional[KeyedLock] = None,
        local_peer_id: Optional[str] = None,
        on_notify: Optional[Callable[[], None]] = None,
        max_tombstones: int = MAX_TOMBSTONES,
    ):
        self._store = store
        self._projector = projector
        self._locks = locks or KeyedLock()
        self.local_peer_id = local_peer_id
        self._on_notify = on_notify
        self._contact_names: dict[str, str] = {}
        # Deleted uuids in deletion order, capped at max_tombstones.
        self._deleted: dict[str, None] = {}
        self._max_tombstones = max_tombstones

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    def set_contacts(self, contacts: Iterable[Contact]) -> None:
        self._contact_names = {c.peer_id: c.name for c in contacts}

    def is_local(self, peer_id: Optional[str]) -> bool:
        return bool(peer_id) and peer_id == self.local_peer_id

    def resolve_sender(self, peer_id: str) -> str:
        if self.is_local(peer_id):
            return LOCAL_LABEL
        return self._contact_names.get(peer_id) or truncate_peer_id(peer_id)

    def is_deleted(self, uuid: str) -> bool:
        return uuid in self._deleted

    # -- inbound ---------------------------------------------------------------

    async def handle_incoming(self, message: IncomingMessage) -> bool:
        """Decode one inbound payload, map its channel and apply it."""
        envelope = parse_envelope(message.content)
        return await self.apply(envelope, channel=to_local(message.channel), sender_id=message.sender)

    async def apply(self, envelope: Envelope, channel: str, sender_id: str) -> bool:
        """Apply a decoded envelope. Returns True if store or view changed."""
        if isinstance(envelope, (PostEnvelope, RawEnvelope)):
            return await self._post(envelope, channel, sender_id)

        if self.is_local(sender_id):
            logger.debug(f"Ignoring echoed {envelope.kind} from local peer")
            return False
        target = envelope.target_uuid
        if not target:
            logger.info(f"Dropping {envelope.kind} without targetUuid")
            return False

        if isinstance(envelope, EditEnvelope):
            if envelope.content is None:
                logger.info(f"Dropping edit of {target} without content")
                return False
            return await self.edit(target, envelope.content, edited_at=envelope.timestamp)
        if isinstance(envelope, DeleteEnvelope):
            return await self.delete(target)
        if isinstance(envelope, ReactionEnvelope):
            if not envelope.emoji:
                logger.info(f"Dropping reaction to {target} without emoji")
                return False
            return await self.react(target, envelope.emoji, reactor=sender_id)
        raise TypeError(f"Unhandled envelope kind {envelope.kind!r}")

    async def _post(self, envelope: Union[PostEnvelope, RawEnvelope], channel: str, sender_id: str) -> bool:
        if isinstance(envelope, RawEnvelope):
            post = PostEnvelope(type=MessageType.TEXT, content=envelope.content)
        else:
            post = envelope
        stored = StoredMessage(
            uuid=post.uuid,
            sender=self.resolve_sender(sender_id),
            content=post.content,
            channel=channel,
            timestamp=now_ms(),
            reply_to=post.reply_to,
            type=post.type,
            status=MessageStatus.DELIVERED,
            file_name=post.file_name,
            file_size=post.file_size,
        )
        if not stored.uuid:
            return await self._insert(stored, notify=not self.is_local(sender_id))
        async with self._locks.hold(stored.uuid):
            if stored.uuid in self._deleted:
                logger.info(f"Ignoring redelivery of deleted message {stored.uuid}")
                return False
            if await self._lookup(stored.uuid) is not None:
                logger.debug(f"Duplicate post {stored.uuid} ignored")
                return False
            return await self._insert(stored, notify=not self.is_local(sender_id))

    async def _insert(self, stored: StoredMessage, notify: bool) -> bool:
        appended = self._projector.append(self._projector.view_of(stored))
        if notify and self._on_notify:
            self._on_notify()
        saved = await self._persist(f"save message {stored.uuid}", self._store.save_message(stored))
        return appended or bool(saved)

    # -- operations shared by inbound envelopes and local actions --------------

    async def edit(self, target: str, content: str, edited_at: Optional[int] = None) -> bool:
        edited_at = edited_at if edited_at is not None else now_ms()
        async with self._locks.hold(target):
            row = await self._require(target)
            if row is None:
                return False
            if row.last_edited is not None and edited_at < row.last_edited:
                logger.info(f"Ignoring stale edit of {target} ({edited_at} < {row.last_edited})")
                return False
            self._projector.patch(target, content=content, is_edited=True)
            await self._persist(f"update content of {target}",
                                self._store.update_message_content(target, content, edited_at))
            return True

    async def delete(self, target: str) -> bool:
        async with self._locks.hold(target):
            if await self._require(target) is None:
                return False
            self._tombstone(target)
            self._projector.remove(target)
            await self._persist(f"delete {target}", self._store.delete_message(target))
            return True

    async def react(self, target: str, emoji: str, reactor: Optional[str] = None) -> bool:
        reactor = reactor or self.local_peer_id or LOCAL_LABEL
        async with self._locks.hold(target):
            row = await self._require(target)
            if row is None:
                return False
            reactions = toggle_reaction(row.reactions, emoji, reactor)
            self._projector.patch(target, reactions=reactions)
            await self._persist(f"update reactions of {target}",
                                self._store.update_message_reactions(target, reactions))
            return True

    # -- helpers ---------------------------------------------------------------

    def _tombstone(self, uuid: str) -> None:
        self._deleted[uuid] = None
        while len(self._deleted) > self._max_tombstones:
            del self._deleted[next(iter(self._deleted))]

    async def _lookup(self, uuid: str) -> Optional[StoredMessage]:
        try:
            return await self._store.get_message(uuid)
        except PersistenceError as e:
            logger.error(f"Failed to read message {uuid}: {e}")
            return None

    async def _require(self, target: str) -> Optional[StoredMessage]:
        row = None if target in self._deleted else await self._lookup(target)
        if row is None:
            logger.info(f"{TargetNotFoundError(target)}; operation ignored")
        return row

    async def _persist(self, what: str, op: Awaitable[object]) -> Optional[object]:
        try:
            result = await op
        except PersistenceError as e:
            logger.error(f"Failed to {what}: {e}")
            return None
        return True if result is None else result
