"""
View projector: the ordered, per-channel list of displayed messages.

The view holds only messages of the selected channel, in arrival order. It is
rebuilt from the store on every channel switch, overlaid with local messages
that are not yet confirmed, and patched in place on live events.
"""

import logging
from datetime import date, tzinfo
from typing import Any, Optional

from phantom_chat.errors import PersistenceError
from phantom_chat.models.envelope import MessageType
from phantom_chat.models.message import (
    DeliveryState,
    MessageStatus,
    StoredMessage,
    ViewMessage,
    ViewRow,
    format_time,
    to_datetime,
)
from phantom_chat.store.base import MessageStore
from phantom_chat.transport.envelope import now_ms

logger = logging.getLogger(__name__)

SYSTEM_LABEL = "System"


class ViewProjector:
    def __init__(self, store: MessageStore, tz: Optional[tzinfo] = None):
        self._store = store
        self._tz = tz
        self._channel: Optional[str] = None
        self._messages: list[ViewMessage] = []
        # Local sends not yet confirmed, across all channels.
        self._optimistic: dict[str, ViewMessage] = {}
        self._generation = 0

    @property
    def channel(self) -> Optional[str]:
        return self._channel

    @property
    def messages(self) -> list[ViewMessage]:
        return list(self._messages)

    def is_active(self, channel: str) -> bool:
        return channel == self._channel

    def find(self, uuid: str) -> Optional[ViewMessage]:
        for msg in self._messages:
            if msg.uuid == uuid:
                return msg
        return None

    def optimistic(self, uuid: str) -> Optional[ViewMessage]:
        return self._optimistic.get(uuid)

    async def load(self, channel: str) -> list[ViewMessage]:
        """Select ``channel`` and rebuild the view from persisted + optimistic state."""
        self._channel = channel
        self._generation += 1
        generation = self._generation
        # Live events keep appending here while the store read is in flight.
        self._messages = []
        try:
            stored = await self._store.get_messages(channel)
        except PersistenceError as e:
            logger.error(f"Failed to load messages for {channel}: {e}")
            stored = []
        if generation != self._generation:
            # Another load started while this one was reading; that load wins.
            return self.messages

        messages = [ViewMessage.from_stored(m, self._tz) for m in stored]
        seen = {m.uuid for m in messages if m.uuid}
        for i, msg in enumerate(messages):
            local = self._optimistic.get(msg.uuid) if msg.uuid else None
            if local is not None:
                messages[i] = msg.model_copy(update={"delivery": local.delivery, "status": local.status})
        for uuid, local in self._optimistic.items():
            if local.channel == channel and uuid not in seen:
                messages.append(local.model_copy(deep=True))
                seen.add(uuid)
        for msg in self._messages:
            if msg.is_system or (msg.uuid and msg.uuid not in seen):
                messages.append(msg)
        self._messages = messages
        return self.messages

    def view_of(self, stored: StoredMessage) -> ViewMessage:
        return ViewMessage.from_stored(stored, self._tz)

    def make_view(self, **fields: Any) -> ViewMessage:
        timestamp = fields.pop("timestamp", None) or now_ms()
        return ViewMessage(timestamp=timestamp, time=format_time(timestamp, self._tz), **fields)

    def append(self, msg: ViewMessage) -> bool:
        """Append to the active view. Ignores other channels and known uuids."""
        if not self.is_active(msg.channel):
            return False
        if msg.uuid and self.find(msg.uuid) is not None:
            return False
        self._messages.append(msg)
        return True

    def add_optimistic(self, msg: ViewMessage) -> bool:
        if msg.uuid:
            self._optimistic[msg.uuid] = msg.model_copy(deep=True)
        return self.append(msg)

    def set_delivery(self, uuid: str, delivery: DeliveryState, status: Optional[MessageStatus] = None) -> bool:
        local = self._optimistic.get(uuid)
        if local is not None:
            if delivery == DeliveryState.CONFIRMED:
                del self._optimistic[uuid]
            else:
                local.delivery = delivery
                if status is not None:
                    local.status = status
        update: dict[str, Any] = {"delivery": delivery}
        if status is not None:
            update["status"] = status
        return self.patch(uuid, **update)

    def patch(self, uuid: str, **fields: Any) -> bool:
        local = self._optimistic.get(uuid)
        if local is not None:
            for key, value in fields.items():
                if key not in ("delivery", "status"):
                    setattr(local, key, value)
        for i, msg in enumerate(self._messages):
            if msg.uuid == uuid:
                self._messages[i] = msg.model_copy(update=fields)
                return True
        return False

    def remove(self, uuid: str) -> bool:
        self._optimistic.pop(uuid, None)
        before = len(self._messages)
        self._messages = [m for m in self._messages if m.uuid != uuid]
        return len(self._messages) != before

    def add_notice(self, channel: str, content: str) -> Optional[ViewMessage]:
        """Inline system notice. View-only, never persisted."""
        notice = self.make_view(sender=SYSTEM_LABEL, content=content, channel=channel,
                                type=MessageType.TEXT, is_system=True)
        return notice if self.append(notice) else None

    def search(self, query: Optional[str] = None) -> list[ViewMessage]:
        visible = [m for m in self._messages if m.channel == self._channel]
        if not query:
            return visible
        needle = query.lower()
        return [m for m in visible if needle in m.content.lower() or needle in m.sender.lower()]

    def rows(self, query: Optional[str] = None) -> list[ViewRow]:
        """Derive date separators and same-sender sequence flags for display."""
        visible = self.search(query)
        separators: list[Optional[date]] = []
        current_day: Optional[date] = None
        for msg in visible:
            separator = None
            if msg.timestamp is not None:
                day = to_datetime(msg.timestamp, self._tz).date()
                if day != current_day:
                    separator = day
                current_day = day
            separators.append(separator)

        tops = [
            i > 0 and visible[i - 1].sender == msg.sender and separators[i] is None
            for i, msg in enumerate(visible)
        ]
        return [
            ViewRow(
                message=msg,
                date_separator=separators[i],
                sequence_top=tops[i],
                sequence_bottom=i + 1 < len(visible) and tops[i + 1],
            )
            for i, msg in enumerate(visible)
        ]
