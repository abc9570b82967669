"""
Durable store contract.

All operations are async and individually fallible: implementations raise
PersistenceError, callers decide whether to log or surface it.
"""

from abc import ABC, abstractmethod
from typing import Optional

from phantom_chat.models.message import Contact, MessageStatus, StoredMessage

DISPLAY_NAME_KEY = "displayName"


class MessageStore(ABC):

    @abstractmethod
    async def save_message(self, message: StoredMessage) -> bool:
        """Insert unless a row with the same uuid exists. Returns True if inserted."""

    @abstractmethod
    async def get_message(self, uuid: str) -> Optional[StoredMessage]: ...

    @abstractmethod
    async def get_messages(self, channel: str) -> list[StoredMessage]:
        """Messages of one channel ordered by timestamp ascending."""

    @abstractmethod
    async def update_message_content(self, uuid: str, content: str, last_edited: int) -> None: ...

    @abstractmethod
    async def update_message_reactions(self, uuid: str, reactions: dict[str, list[str]]) -> None: ...

    @abstractmethod
    async def update_message_status(self, uuid: str, status: MessageStatus) -> None: ...

    @abstractmethod
    async def delete_message(self, uuid: str) -> bool: ...

    @abstractmethod
    async def add_contact(self, peer_id: str, name: str) -> Contact:
        """Insert or replace by peer id."""

    @abstractmethod
    async def get_contacts(self) -> list[Contact]:
        """All contacts ordered by name."""

    @abstractmethod
    async def delete_contact(self, peer_id: str) -> None: ...

    @abstractmethod
    async def get_setting(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def save_setting(self, key: str, value: str) -> None: ...

    async def close(self) -> None:
        pass
