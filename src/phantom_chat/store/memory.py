"""
In-memory store. Used when no database is configured and in tests.
"""

import time
from typing import Optional

from phantom_chat.models.message import Contact, MessageStatus, StoredMessage
from phantom_chat.store.base import MessageStore


class MemoryStore(MessageStore):
    def __init__(self) -> None:
        self._messages: list[StoredMessage] = []
        self._contacts: dict[str, Contact] = {}
        self._settings: dict[str, str] = {}

    def _find(self, uuid: str) -> Optional[StoredMessage]:
        for msg in self._messages:
            if msg.uuid == uuid:
                return msg
        return None

    async def save_message(self, message: StoredMessage) -> bool:
        if message.uuid is not None and self._find(message.uuid) is not None:
            return False
        self._messages.append(message.model_copy(deep=True))
        return True

    async def get_message(self, uuid: str) -> Optional[StoredMessage]:
        msg = self._find(uuid)
        return msg.model_copy(deep=True) if msg else None

    async def get_messages(self, channel: str) -> list[StoredMessage]:
        rows = [m.model_copy(deep=True) for m in self._messages if m.channel == channel]
        return sorted(rows, key=lambda m: m.timestamp)

    async def update_message_content(self, uuid: str, content: str, last_edited: int) -> None:
        msg = self._find(uuid)
        if msg:
            msg.content = content
            msg.last_edited = last_edited

    async def update_message_reactions(self, uuid: str, reactions: dict[str, list[str]]) -> None:
        msg = self._find(uuid)
        if msg:
            msg.reactions = {emoji: list(who) for emoji, who in reactions.items()}

    async def update_message_status(self, uuid: str, status: MessageStatus) -> None:
        msg = self._find(uuid)
        if msg:
            msg.status = status

    async def delete_message(self, uuid: str) -> bool:
        before = len(self._messages)
        self._messages = [m for m in self._messages if m.uuid != uuid]
        return len(self._messages) != before

    async def add_contact(self, peer_id: str, name: str) -> Contact:
        contact = Contact(peer_id=peer_id, name=name, added_at=int(time.time() * 1000))
        self._contacts[peer_id] = contact
        return contact

    async def get_contacts(self) -> list[Contact]:
        return sorted(self._contacts.values(), key=lambda c: c.name)

    async def delete_contact(self, peer_id: str) -> None:
        self._contacts.pop(peer_id, None)

    async def get_setting(self, key: str) -> Optional[str]:
        return self._settings.get(key)

    async def save_setting(self, key: str, value: str) -> None:
        self._settings[key] = value

    def __len__(self) -> int:
        return len(self._messages)
