"""
Transport contract consumed by the engine.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable

EventHandler = Callable[[str, Any], None]


class Transport(ABC):

    @abstractmethod
    async def send(self, channel: str, payload: str) -> None:
        """Publish a serialized envelope on a wire channel. Raises TransportError."""

    @abstractmethod
    async def send_typing(self, channel: str, is_typing: bool) -> None: ...

    @abstractmethod
    async def connect_peer(self, address: str) -> None: ...

    @abstractmethod
    def add_event_handler(self, handler: EventHandler) -> Callable[[], None]:
        """Register an inbound event handler. Returns a cleanup function."""
