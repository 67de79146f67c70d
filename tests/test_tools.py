"""Tests for the tool registry."""

from chatpilot.agent.tools import (
    TOOLS,
    RiskLevel,
    ToolGate,
    find_by_name,
    is_enabled_by_config,
    tool_cooldown_minutes,
)
from chatpilot.config.schema import AutonomousConfig


class TestRegistry:
    """Tests for tool lookup and metadata."""

    def test_names_are_unique(self):
        names = [t.name for t in TOOLS]
        assert len(names) == len(set(names)) == 8

    def test_find_by_name(self):
        ban = find_by_name("banUser")
        assert ban is not None
        assert ban.risk == RiskLevel.HIGH
        assert ban.cooldown_minutes == 5
        assert ban.required_params == ["usernameOrDescriptor"]
        assert find_by_name("deleteChannel") is None

    def test_describe(self):
        line = find_by_name("createTwitchPoll").describe()
        assert line.startswith("- createTwitchPoll: Create a poll")
        assert "(Risk: medium)" in line
        assert "choices: Comma-separated choices" in line

    def test_clip_has_no_parameters(self):
        assert "Parameters: none" in find_by_name("createTwitchClip").describe()


class TestGates:
    """Tests for configuration gates and cooldowns."""

    def test_moderation_needs_one_detector(self):
        timeout = find_by_name("timeoutUser")
        only_spam = AutonomousConfig.model_validate({"enabled": True, "rules": {"toxicityDetection": {"enabled": False}}})
        neither = AutonomousConfig.model_validate({
            "enabled": True,
            "rules": {"toxicityDetection": {"enabled": False}, "spamDetection": {"enabled": False}},
        })

        assert timeout.gate == ToolGate.MODERATION
        assert is_enabled_by_config(timeout, only_spam)
        assert not is_enabled_by_config(timeout, neither)

    def test_polls_gate(self):
        poll = find_by_name("createTwitchPoll")
        assert not is_enabled_by_config(poll, AutonomousConfig())
        assert is_enabled_by_config(poll, AutonomousConfig.model_validate({"rules": {"pollAutomation": {"enabled": True}}}))

    def test_poll_cooldown_from_config(self):
        poll = find_by_name("createTwitchPoll")
        config = AutonomousConfig.model_validate({"rules": {"pollAutomation": {"cooldown": 45}}})
        assert tool_cooldown_minutes(poll, config) == 45.0
        assert tool_cooldown_minutes(find_by_name("banUser"), config) == 5
        assert tool_cooldown_minutes(find_by_name("sendMessageToChat"), config) is None
