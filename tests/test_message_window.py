"""Tests for MessageWindow and ChatMessage."""

from datetime import datetime, timedelta, timezone

import pytest

from chatpilot.bus import ChatMessage, MessageWindow

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _msg(user: str, content: str, seconds: float = 0) -> ChatMessage:
    return ChatMessage(username=user, content=content, timestamp=T0 + timedelta(seconds=seconds))


class TestMessageWindow:
    """Tests for the bounded message buffer."""

    def test_keeps_newest_messages_in_order(self):
        """Test that more than capacity inserts keep the newest N in arrival order."""
        window = MessageWindow(capacity=100)
        for i in range(150):
            window.ingest(_msg(f"user{i % 7}", f"message {i}", seconds=i))

        messages = window.messages()
        assert len(messages) == 100
        assert window.size() == 100
        assert [m.content for m in messages] == [f"message {i}" for i in range(50, 150)]

    def test_messages_returns_snapshot(self):
        """Test that mutating the snapshot does not touch the window."""
        window = MessageWindow()
        window.ingest(_msg("alice", "hi"))

        snapshot = window.messages()
        snapshot.clear()

        assert len(window) == 1

    def test_extend_and_unique_users(self):
        window = MessageWindow()
        window.extend([_msg("alice", "hi"), _msg("bob", "yo"), _msg("alice", "again")])

        assert window.size() == 3
        assert window.unique_users() == 2

    def test_clear(self):
        window = MessageWindow()
        window.extend([_msg("alice", "hi"), _msg("bob", "yo")])
        window.clear()

        assert window.size() == 0
        assert window.user_rates(now=T0) == {}

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            MessageWindow(capacity=0)


class TestUserRates:
    """Tests for per-user message rates."""

    def test_counts_trailing_minute_only(self):
        """Test that only messages within the last 60 seconds are counted."""
        window = MessageWindow()
        window.ingest(_msg("spammer", "buy now", seconds=0))
        window.ingest(_msg("spammer", "buy now", seconds=70))
        window.ingest(_msg("spammer", "buy now", seconds=80))
        window.ingest(_msg("viewer", "hello", seconds=10))

        rates = window.user_rates(now=T0 + timedelta(seconds=90))

        assert rates == {"spammer": 2}

    def test_history_pruned_past_horizon(self):
        """Test that per-user history older than ten minutes is dropped."""
        window = MessageWindow()
        window.ingest(_msg("old", "hey", seconds=0))

        window.prune(now=T0 + timedelta(minutes=11))

        assert "old" not in window._user_timestamps

    def test_rates_survive_message_eviction(self):
        """Test that rates come from per-user history, not the message buffer."""
        window = MessageWindow(capacity=2)
        for i in range(5):
            window.ingest(_msg("flooder", f"spam {i}", seconds=i))

        assert window.size() == 2
        assert window.user_rates(now=T0 + timedelta(seconds=5)) == {"flooder": 5}

    def test_user_history_pruned_on_ingest(self):
        """Test that a user's own stale timestamps are dropped as new ones arrive."""
        window = MessageWindow()
        window.ingest(_msg("regular", "first", seconds=0))
        window.ingest(_msg("regular", "later", seconds=11 * 60))

        assert window._user_timestamps["regular"] == [T0 + timedelta(minutes=11)]

    def test_departed_users_forgotten_without_rate_queries(self):
        """Test that users tracked while nobody reads rates stay bounded by capacity."""
        window = MessageWindow(capacity=100)
        hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        for i in range(5000):
            window.ingest(ChatMessage(username=f"viewer{i}", content="hi", timestamp=hour_ago))

        assert window.size() == 100
        assert len(window._user_timestamps) <= window.capacity

    def test_recent_users_kept_after_eviction(self):
        window = MessageWindow(capacity=2)
        now = datetime.now(timezone.utc)
        for i in range(4):
            window.ingest(ChatMessage(username=f"viewer{i}", content="hi", timestamp=now))

        assert window.user_rates(now=now) == {f"viewer{i}": 1 for i in range(4)}


class TestChatMessage:
    """Tests for ChatMessage conversion."""

    def test_to_line(self):
        assert _msg("alice", "hello there").to_line() == "alice: hello there"

    def test_from_dict_iso_timestamp(self):
        message = ChatMessage.from_dict(
            {"username": "bob", "content": "hi", "timestamp": "2025-03-01T12:00:00+00:00"}
        )
        assert message.username == "bob"
        assert message.timestamp == T0

    def test_from_dict_epoch_timestamp(self):
        message = ChatMessage.from_dict({"username": "bob", "content": "hi", "timestamp": T0.timestamp()})
        assert message.timestamp == T0

    def test_from_dict_missing_timestamp(self):
        message = ChatMessage.from_dict({"username": "bob", "content": "hi"})
        assert message.timestamp.tzinfo is not None
