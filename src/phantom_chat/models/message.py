"""
Message, contact and view models.
"""

from datetime import date, datetime, tzinfo
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from phantom_chat.models.envelope import MessageType, ReplyReference


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class DeliveryState(str, Enum):
    """Lifecycle of a locally sent message."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class StoredMessage(BaseModel):
    """Persisted message row."""
    uuid: Optional[str] = None  # None only for legacy rows
    sender: str
    content: str
    channel: str
    timestamp: int  # ms since epoch
    reply_to: Optional[ReplyReference] = None
    type: MessageType = MessageType.TEXT
    status: MessageStatus = MessageStatus.SENT
    reactions: dict[str, list[str]] = Field(default_factory=dict)  # emoji -> reactor peer ids
    last_edited: Optional[int] = None
    file_name: Optional[str] = None
    file_size: Optional[str] = None


class ViewMessage(BaseModel):
    """In-memory projection of a StoredMessage. Never persisted."""
    uuid: Optional[str] = None
    sender: str
    content: str
    channel: str
    timestamp: Optional[int] = None
    time: str = ""
    reply_to: Optional[ReplyReference] = None
    type: MessageType = MessageType.TEXT
    status: Optional[MessageStatus] = None
    reactions: dict[str, list[str]] = Field(default_factory=dict)
    is_edited: bool = False
    file_name: Optional[str] = None
    file_size: Optional[str] = None
    delivery: Optional[DeliveryState] = None  # set only for local sends
    is_system: bool = False

    @classmethod
    def from_stored(cls, msg: StoredMessage, tz: Optional[tzinfo] = None) -> "ViewMessage":
        return cls(
            uuid=msg.uuid,
            sender=msg.sender,
            content=msg.content,
            channel=msg.channel,
            timestamp=msg.timestamp,
            time=format_time(msg.timestamp, tz),
            reply_to=msg.reply_to,
            type=msg.type,
            status=msg.status,
            reactions={emoji: list(who) for emoji, who in msg.reactions.items()},
            is_edited=msg.last_edited is not None,
            file_name=msg.file_name,
            file_size=msg.file_size,
        )


class ViewRow(BaseModel):
    """One displayed row: the message plus derived layout flags."""
    message: ViewMessage
    date_separator: Optional[date] = None
    sequence_top: bool = False
    sequence_bottom: bool = False


class Contact(BaseModel):
    peer_id: str
    name: str
    added_at: int


def to_datetime(timestamp_ms: int, tz: Optional[tzinfo] = None) -> datetime:
    if tz is None:
        return datetime.fromtimestamp(timestamp_ms / 1000)
    return datetime.fromtimestamp(timestamp_ms / 1000, tz)


def format_time(timestamp_ms: Optional[int], tz: Optional[tzinfo] = None) -> str:
    if timestamp_ms is None:
        return ""
    return to_datetime(timestamp_ms, tz).strftime("%H:%M:%S")
