"""
Envelope construction and parsing.

Parsing is strict-then-lenient: a payload that validates as the current
protocol is taken as is; a current-protocol object with bad fields is salvaged
field by field; legacy ``{"text": ...}`` objects become text posts; anything
else becomes plain text with no uuid.
"""

import json
import logging
import time
import uuid
from typing import Any, Optional

from pydantic import ValidationError

from phantom_chat.errors import DecodeError
from phantom_chat.models.envelope import (
    DeleteEnvelope,
    EditEnvelope,
    Envelope,
    MessageType,
    POST_TYPES,
    PostEnvelope,
    RawEnvelope,
    ReactionEnvelope,
    ReplyReference,
    WireEnvelope,
)

logger = logging.getLogger(__name__)

_STRING_FIELDS = ("uuid", "content", "text", "targetUuid", "fileName", "fileSize")


def new_message_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


def build_envelope(
    message_type: MessageType,
    *,
    content: Optional[str] = None,
    message_id: Optional[str] = None,
    reply_to: Optional[ReplyReference] = None,
    target_uuid: Optional[str] = None,
    file_name: Optional[str] = None,
    file_size: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> str:
    """Serialize a current-protocol envelope for the wire."""
    envelope = WireEnvelope(
        uuid=message_id or new_message_id(),
        type=message_type,
        content=content,
        reply_to=reply_to,
        target_uuid=target_uuid,
        file_name=file_name,
        file_size=file_size,
        timestamp=timestamp if timestamp is not None else now_ms(),
    )
    return envelope.model_dump_json(by_alias=True, exclude_none=True)


def parse_envelope(raw: str) -> Envelope:
    """Decode a wire payload. Never raises: undecodable input becomes plain text."""
    try:
        return _decode(raw)
    except DecodeError as e:
        logger.debug(f"Payload treated as plain text: {e}")
        return RawEnvelope(content=raw)


def _decode(raw: str) -> Envelope:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError("not JSON") from e
    if not isinstance(data, dict):
        raise DecodeError(f"JSON {type(data).__name__} is not an envelope")
    if "type" in data:
        return _from_wire(_validate_current(data))
    if "text" in data:
        text = data["text"]
        return PostEnvelope(
            type=MessageType.TEXT,
            content=text if isinstance(text, str) else "",
            reply_to=_reply_reference(data.get("replyTo")),
            legacy=True,
        )
    raise DecodeError("object has neither 'type' nor 'text'")


def _validate_current(data: dict[str, Any]) -> WireEnvelope:
    try:
        return WireEnvelope.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Salvaging malformed envelope: {e.error_count()} bad field(s)")
    return WireEnvelope.model_validate(_salvage(data))


def _salvage(data: dict[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    try:
        cleaned["type"] = MessageType(data.get("type"))
    except ValueError:
        cleaned["type"] = MessageType.TEXT
    for field in _STRING_FIELDS:
        value = data.get(field)
        if isinstance(value, str):
            cleaned[field] = value
    reply_to = _reply_reference(data.get("replyTo"))
    if reply_to is not None:
        cleaned["replyTo"] = reply_to
    timestamp = data.get("timestamp")
    if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
        cleaned["timestamp"] = int(timestamp)
    return cleaned


def _reply_reference(value: Any) -> Optional[ReplyReference]:
    if value is None:
        return None
    try:
        return ReplyReference.model_validate(value)
    except ValidationError:
        logger.debug("Dropping malformed replyTo")
        return None


def _from_wire(wire: WireEnvelope) -> Envelope:
    content = wire.content or wire.text
    if wire.type == MessageType.EDIT:
        return EditEnvelope(uuid=wire.uuid, target_uuid=wire.target_uuid, content=content, timestamp=wire.timestamp)
    if wire.type == MessageType.DELETE:
        return DeleteEnvelope(uuid=wire.uuid, target_uuid=wire.target_uuid, timestamp=wire.timestamp)
    if wire.type == MessageType.REACTION:
        return ReactionEnvelope(uuid=wire.uuid, target_uuid=wire.target_uuid, emoji=content, timestamp=wire.timestamp)
    if wire.type in POST_TYPES:
        return PostEnvelope(
            uuid=wire.uuid,
            type=wire.type,
            content=content or "",
            reply_to=wire.reply_to,
            file_name=wire.file_name,
            file_size=wire.file_size,
            timestamp=wire.timestamp,
        )
    raise DecodeError(f"Unhandled message type {wire.type!r}")
