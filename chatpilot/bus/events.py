"""Event types for the chat stream."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class ChatMessage:
    """Message received from the chat transport."""

    username: str
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_line(self) -> str:
        """Render as a single prompt line."""
        return f"{self.username}: {self.content}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        """Create from a transport payload ({username, content, timestamp})."""
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        elif isinstance(timestamp, (int, float)):
            timestamp = datetime.fromtimestamp(timestamp, tz=timezone.utc)
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)
        return cls(
            username=str(data["username"]),
            content=str(data.get("content", "")),
            timestamp=timestamp,
        )
