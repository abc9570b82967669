"""
Wire envelope models.

The wire format is camelCase JSON; fields are declared snake_case with aliases.
Decoded envelopes form a closed union discriminated on ``kind``.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class MessageType(str, Enum):
    TEXT = "text"
    EDIT = "edit"
    DELETE = "delete"
    REACTION = "reaction"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"


POST_TYPES = frozenset({MessageType.TEXT, MessageType.IMAGE, MessageType.FILE, MessageType.AUDIO})


class ReplyReference(BaseModel):
    """Quoted message, embedded by value. Not a live link."""
    model_config = ConfigDict(extra="ignore")

    sender: str
    content: str
    uuid: Optional[str] = None


class WireEnvelope(BaseModel):
    """Current-protocol envelope exactly as it travels on the wire."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    uuid: Optional[str] = None
    type: MessageType
    content: Optional[str] = None
    text: Optional[str] = None  # legacy alias for content
    reply_to: Optional[ReplyReference] = Field(default=None, alias="replyTo")
    target_uuid: Optional[str] = Field(default=None, alias="targetUuid")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_size: Optional[str] = Field(default=None, alias="fileSize")
    timestamp: Optional[int] = None


class PostEnvelope(BaseModel):
    kind: Literal["post"] = "post"
    uuid: Optional[str] = None
    type: MessageType = MessageType.TEXT
    content: str = ""
    reply_to: Optional[ReplyReference] = None
    file_name: Optional[str] = None
    file_size: Optional[str] = None
    timestamp: Optional[int] = None
    legacy: bool = False


class EditEnvelope(BaseModel):
    kind: Literal["edit"] = "edit"
    uuid: Optional[str] = None
    target_uuid: Optional[str] = None
    content: Optional[str] = None
    timestamp: Optional[int] = None


class DeleteEnvelope(BaseModel):
    kind: Literal["delete"] = "delete"
    uuid: Optional[str] = None
    target_uuid: Optional[str] = None
    timestamp: Optional[int] = None


class ReactionEnvelope(BaseModel):
    kind: Literal["reaction"] = "reaction"
    uuid: Optional[str] = None
    target_uuid: Optional[str] = None
    emoji: Optional[str] = None
    timestamp: Optional[int] = None


class RawEnvelope(BaseModel):
    """Unparsed payload: displayable as text, never addressable."""
    kind: Literal["raw"] = "raw"
    content: str


Envelope = Annotated[
    Union[PostEnvelope, EditEnvelope, DeleteEnvelope, ReactionEnvelope, RawEnvelope],
    Field(discriminator="kind"),
]
