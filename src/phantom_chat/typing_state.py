"""
Typing indicator state machines.

Outbound (local composing) and inbound (remote display) share no state.

- TypingNotifier: Composing while an idle timer is pending. A nonempty input
  with no timer pending sends "typing started"; every input change re-arms the
  timer. Timer fire, or an explicit stop while the timer is pending (message
  sent, channel switched), sends "typing stopped".
- TypingTracker: a start records the signal time and schedules a one-shot
  staleness check; the check clears the peer only if no newer signal arrived.
  An explicit stop clears immediately.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from phantom_chat.channels import is_direct

logger = logging.getLogger(__name__)

DEFAULT_IDLE_DELAY_S = 1.0
DEFAULT_EXPIRY_CHECK_S = 3.0
DEFAULT_STALE_AFTER_S = 2.5


class TypingNotifier:
    def __init__(
        self,
        send: Callable[[str, bool], Awaitable[None]],
        idle_delay_s: float = DEFAULT_IDLE_DELAY_S,
    ):
        self._send = send
        self._idle_delay_s = idle_delay_s
        self._timer: Optional[asyncio.TimerHandle] = None
        self._channel: Optional[str] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def composing(self) -> bool:
        return self._timer is not None

    @property
    def channel(self) -> Optional[str]:
        return self._channel

    def input_changed(self, channel: Optional[str], text: str) -> None:
        """Called on every change of the input buffer. Public channels never signal."""
        if not channel or not is_direct(channel):
            return
        if self._channel is not None and self._channel != channel:
            self.stop()
        self._channel = channel

        if text and self._timer is None:
            self._emit(channel, True)

        if self._timer:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._idle_delay_s, self._on_idle)

    def stop(self) -> None:
        """Leave Composing now (message sent or channel switched)."""
        timer, self._timer = self._timer, None
        channel, self._channel = self._channel, None
        if timer is not None:
            timer.cancel()
            if channel:
                self._emit(channel, False)

    def _on_idle(self) -> None:
        self._timer = None
        channel, self._channel = self._channel, None
        if channel:
            self._emit(channel, False)

    def _emit(self, channel: str, is_typing: bool) -> None:
        async def _do_send() -> None:
            try:
                await self._send(channel, is_typing)
            except Exception as e:
                logger.warning(f"Typing signal to {channel} failed: {e}")

        task = asyncio.get_running_loop().create_task(_do_send())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> None:
        """Wait for in-flight typing signals."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        if self._timer:
            self._timer.cancel()
            self._timer = None
        self._channel = None


class TypingTracker:
    def __init__(
        self,
        on_change: Optional[Callable[[str, bool], None]] = None,
        expiry_check_s: float = DEFAULT_EXPIRY_CHECK_S,
        stale_after_s: float = DEFAULT_STALE_AFTER_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._on_change = on_change
        self._expiry_check_s = expiry_check_s
        self._stale_after_s = stale_after_s
        self._clock = clock
        self._last_signal: dict[str, float] = {}
        self._checks: dict[str, asyncio.TimerHandle] = {}

    def is_typing(self, peer_id: str) -> bool:
        return peer_id in self._last_signal

    @property
    def typing_peers(self) -> list[str]:
        return list(self._last_signal)

    def signal(self, peer_id: str, is_typing: bool) -> None:
        if is_typing:
            self.started(peer_id)
        else:
            self.stopped(peer_id)

    def started(self, peer_id: str) -> None:
        was_typing = peer_id in self._last_signal
        self._last_signal[peer_id] = self._clock()
        self._cancel_check(peer_id)
        loop = asyncio.get_running_loop()
        self._checks[peer_id] = loop.call_later(self._expiry_check_s, self._on_check, peer_id)
        if not was_typing:
            self._notify(peer_id, True)

    def stopped(self, peer_id: str) -> None:
        self._cancel_check(peer_id)
        if self._last_signal.pop(peer_id, None) is not None:
            self._notify(peer_id, False)

    def check_expiry(self, peer_id: str) -> bool:
        """Clear ``peer_id`` if its last signal is stale. Returns True if cleared."""
        last = self._last_signal.get(peer_id)
        if last is None or self._clock() - last <= self._stale_after_s:
            return False
        del self._last_signal[peer_id]
        self._notify(peer_id, False)
        return True

    def _on_check(self, peer_id: str) -> None:
        self._checks.pop(peer_id, None)
        self.check_expiry(peer_id)

    def _cancel_check(self, peer_id: str) -> None:
        handle = self._checks.pop(peer_id, None)
        if handle:
            handle.cancel()

    def _notify(self, peer_id: str, is_typing: bool) -> None:
        if self._on_change:
            self._on_change(peer_id, is_typing)

    def close(self) -> None:
        for handle in self._checks.values():
            handle.cancel()
        self._checks.clear()
        self._last_signal.clear()
