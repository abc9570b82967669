"""
phantom-chat: message protocol engine for a peer-to-peer chat client.

Decodes peer payloads, reconciles them with local history and keeps a
per-channel view in sync, with optimistic local sends and typing signals.
"""

from phantom_chat.chat import ChatEngine
from phantom_chat.client import AsyncPhantomChat
from phantom_chat.config import ChatConfig, load_config, save_config
from phantom_chat.errors import (
    DecodeError,
    PermissionDeniedError,
    PersistenceError,
    PhantomChatError,
    TargetNotFoundError,
    TransportError,
)
from phantom_chat.models.envelope import MessageType, ReplyReference
from phantom_chat.models.events import NodeEvent, UIEvent
from phantom_chat.models.message import DeliveryState, MessageStatus
from phantom_chat.store.memory import MemoryStore
from phantom_chat.store.sqlite import SqliteStore

__version__ = "0.1.0"
__all__ = [
    "AsyncPhantomChat",
    "ChatEngine",
    "ChatConfig",
    "load_config",
    "save_config",
    "PhantomChatError",
    "DecodeError",
    "TargetNotFoundError",
    "PersistenceError",
    "TransportError",
    "PermissionDeniedError",
    "MessageType",
    "ReplyReference",
    "MessageStatus",
    "DeliveryState",
    "NodeEvent",
    "UIEvent",
    "MemoryStore",
    "SqliteStore",
]
