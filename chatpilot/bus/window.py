"""Bounded window over the live chat stream."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta
from typing import Iterable

from chatpilot.bus.events import ChatMessage
from chatpilot.utils.helpers import as_utc, utc_now

DEFAULT_CAPACITY = 100
USER_HISTORY_HORIZON = timedelta(minutes=10)
RATE_WINDOW = timedelta(seconds=60)


class MessageWindow:
    """
    Bounded FIFO of chat messages plus per-user rolling timestamps.

    The message buffer never exceeds ``capacity``; the oldest message is
    evicted first. Per-user timestamps are pruned to a 10-minute horizon
    and a trailing 60-second count gives a messages-per-minute rate.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("Window capacity must be at least 1")
        self.capacity = capacity
        self._messages: deque[ChatMessage] = deque(maxlen=capacity)
        self._user_timestamps: dict[str, list[datetime]] = {}
        self._since_sweep = 0

    def ingest(self, message: ChatMessage) -> None:
        """Append a message, evicting the oldest beyond capacity."""
        stamp = as_utc(message.timestamp)
        self._messages.append(message)

        stamps = self._user_timestamps.setdefault(message.username, [])
        stamps.append(stamp)
        cutoff = stamp - USER_HISTORY_HORIZON
        if stamps[0] < cutoff:
            stamps[:] = [t for t in stamps if t >= cutoff]

        self._since_sweep += 1
        if self._since_sweep >= self.capacity:
            self._sweep()

    def _sweep(self) -> None:
        """Forget users who left the buffer and have no history inside the horizon."""
        self._since_sweep = 0
        cutoff = utc_now() - USER_HISTORY_HORIZON
        buffered = {m.username for m in self._messages}
        for username, stamps in list(self._user_timestamps.items()):
            if username not in buffered and max(stamps) < cutoff:
                del self._user_timestamps[username]

    def extend(self, messages: Iterable[ChatMessage]) -> None:
        for message in messages:
            self.ingest(message)

    def messages(self) -> list[ChatMessage]:
        """Snapshot of buffered messages in arrival order."""
        return list(self._messages)

    def size(self) -> int:
        return len(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def clear(self) -> None:
        self._messages.clear()
        self._user_timestamps.clear()
        self._since_sweep = 0

    def unique_users(self) -> int:
        return len({m.username for m in self._messages})

    def prune(self, now: datetime | None = None) -> None:
        """Drop per-user timestamps older than the history horizon."""
        cutoff = as_utc(now or utc_now()) - USER_HISTORY_HORIZON
        for username in list(self._user_timestamps):
            kept = [t for t in self._user_timestamps[username] if t >= cutoff]
            if kept:
                self._user_timestamps[username] = kept
            else:
                del self._user_timestamps[username]

    def user_rates(self, now: datetime | None = None) -> dict[str, int]:
        """
        Messages per user within the trailing 60 seconds.

        Users with no message in that span are omitted.
        """
        now = as_utc(now or utc_now())
        self.prune(now)
        cutoff = now - RATE_WINDOW
        rates: dict[str, int] = {}
        for username, stamps in self._user_timestamps.items():
            count = sum(1 for t in stamps if t >= cutoff)
            if count:
                rates[username] = count
        return rates
