"""
Phantom chat error types.

Nothing here is fatal to the engine: every handler catches these at its own
boundary and degrades to logging or a user-visible notice.
"""

from typing import Any, Optional


class PhantomChatError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class DecodeError(PhantomChatError):
    """Payload unparsable or missing expected fields. Never leaves the codec."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("decode_error", message, details)


class TargetNotFoundError(PhantomChatError):
    """Edit / Delete / React referencing a uuid that is not in the store."""

    def __init__(self, target_uuid: Optional[str]):
        super().__init__("target_not_found", f"No message with uuid {target_uuid!r}", {"uuid": target_uuid})
        self.target_uuid = target_uuid


class PersistenceError(PhantomChatError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("persistence_error", message, details)


class TransportError(PhantomChatError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("transport_error", message, details)

    @property
    def handshake_pending(self) -> bool:
        """The node started a key exchange instead of sending; retry after it completes."""
        return "handshake sent" in str(self).lower()


class PermissionDeniedError(PhantomChatError):
    """A local device capability (microphone, file) was denied."""

    def __init__(self, message: str):
        super().__init__("permission_denied", message)
