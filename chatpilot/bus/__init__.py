"""Chat stream module: message events and the bounded message window."""

from chatpilot.bus.events import ChatMessage
from chatpilot.bus.window import MessageWindow

__all__ = ["ChatMessage", "MessageWindow"]
