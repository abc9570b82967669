"""
Event names exchanged with the local P2P node and raised to UI listeners.
"""

from pydantic import BaseModel, ConfigDict, Field


class NodeEvent:
    """Inbound events emitted by the P2P node."""
    NEW_MESSAGE = "new-message"
    PEER_DISCOVERED = "peer-discovered"
    PEER_EXPIRED = "peer-expired"
    LISTEN_ADDRESS = "listen-address"
    HANDSHAKE_COMPLETE = "handshake-complete"
    PEER_TYPING = "peer-typing"
    LOCAL_PEER_ID = "local-peer-id"


class UIEvent:
    """Events raised by the engine to its listeners."""
    VIEW_CHANGED = "view:changed"
    NOTICE = "view:notice"
    ALERT = "ui:alert"
    NOTIFY = "ui:notify"  # audible new-message notification
    TYPING_CHANGED = "typing:changed"
    PEERS_CHANGED = "peers:changed"
    ADDRESSES_CHANGED = "addresses:changed"
    LOCAL_PEER_ID = "peer:local_id"
    CONTACTS_CHANGED = "contacts:changed"
    DELIVERY_CHANGED = "delivery:changed"


class IncomingMessage(BaseModel):
    """new-message payload. ``content`` is the serialized envelope."""
    model_config = ConfigDict(extra="ignore")

    sender: str
    content: str
    channel: str


class TypingSignal(BaseModel):
    """peer-typing payload."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    peer_id: str = Field(alias="peerId")
    is_typing: bool = Field(alias="isTyping")
