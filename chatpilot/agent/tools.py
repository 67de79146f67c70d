"""
Tool registry: the external actions the decision engine may propose.

Each tool carries its parameters, risk level, cooldown and the
configuration gate that enables it. Adding a tool means adding a
ToolSpec to TOOLS; nothing else branches on tool names except parameter
defaults in the decision engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from chatpilot.config.schema import AutonomousConfig


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ToolGate(str, Enum):
    """Configuration gate a tool depends on."""

    NONE = "none"
    MODERATION = "moderation"  # spam or toxicity detection
    MESSAGING = "messaging"  # chat engagement
    POLLS = "polls"  # poll automation


@dataclass(frozen=True)
class ToolParam:
    name: str
    type: str
    description: str
    required: bool = False


@dataclass(frozen=True)
class ToolSpec:
    """One external capability."""

    name: str
    description: str
    risk: RiskLevel
    params: tuple[ToolParam, ...] = ()
    cooldown_minutes: float | None = None
    gate: ToolGate = ToolGate.NONE
    synthesize_parameters: bool = False  # Wording benefits from a second oracle call

    @property
    def required_params(self) -> list[str]:
        return [p.name for p in self.params if p.required]

    def describe(self) -> str:
        """Prompt line describing this tool."""
        params = ", ".join(f"{p.name}: {p.description}" for p in self.params) or "none"
        return f"- {self.name}: {self.description} (Risk: {self.risk.value})\n  Parameters: {params}"


TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="sendMessageToChat",
        description="Send a message to the chat",
        risk=RiskLevel.LOW,
        params=(ToolParam("message", "string", "The message to send to chat", required=True),),
        gate=ToolGate.MESSAGING,
        synthesize_parameters=True,
    ),
    ToolSpec(
        name="timeoutUser",
        description="Timeout a user in the chat",
        risk=RiskLevel.HIGH,
        params=(
            ToolParam("usernameOrDescriptor", "string", "Username to timeout", required=True),
            ToolParam("reason", "string", "Reason for timeout"),
            ToolParam("duration", "number", "Timeout duration in seconds"),
        ),
        cooldown_minutes=1,
        gate=ToolGate.MODERATION,
    ),
    ToolSpec(
        name="banUser",
        description="Permanently ban a user from the chat",
        risk=RiskLevel.HIGH,
        params=(
            ToolParam("usernameOrDescriptor", "string", "Username to ban", required=True),
            ToolParam("reason", "string", "Reason for ban"),
        ),
        cooldown_minutes=5,
        gate=ToolGate.MODERATION,
    ),
    ToolSpec(
        name="createTwitchPoll",
        description="Create a poll for viewers to participate in",
        risk=RiskLevel.MEDIUM,
        params=(
            ToolParam("title", "string", "Poll title", required=True),
            ToolParam("choices", "string", "Comma-separated choices", required=True),
            ToolParam("duration", "number", "Duration in seconds", required=True),
        ),
        cooldown_minutes=15,
        gate=ToolGate.POLLS,
        synthesize_parameters=True,
    ),
    ToolSpec(
        name="createTwitchPrediction",
        description="Create a prediction for viewers to bet on",
        risk=RiskLevel.MEDIUM,
        params=(
            ToolParam("title", "string", "Prediction title", required=True),
            ToolParam("outcomes", "string", "Comma-separated outcomes", required=True),
            ToolParam("duration", "number", "Duration in seconds", required=True),
        ),
        cooldown_minutes=20,
        synthesize_parameters=True,
    ),
    ToolSpec(
        name="createTwitchClip",
        description="Create a clip of the current stream moment",
        risk=RiskLevel.LOW,
        cooldown_minutes=5,
    ),
    ToolSpec(
        name="updateStreamTitle",
        description="Update the stream title",
        risk=RiskLevel.MEDIUM,
        params=(ToolParam("title", "string", "The new stream title", required=True),),
        cooldown_minutes=30,
        synthesize_parameters=True,
    ),
    ToolSpec(
        name="updateStreamCategory",
        description="Update the stream game category",
        risk=RiskLevel.MEDIUM,
        params=(ToolParam("category", "string", "The new game category", required=True),),
        cooldown_minutes=30,
    ),
)


def find_by_name(name: str, tools: tuple[ToolSpec, ...] = TOOLS) -> ToolSpec | None:
    """Find a tool spec by name."""
    for spec in tools:
        if spec.name == name:
            return spec
    return None


def tool_cooldown_minutes(spec: ToolSpec, config: AutonomousConfig) -> float | None:
    """Effective cooldown; poll automation's configured cooldown overrides the poll tool's."""
    if spec.gate == ToolGate.POLLS:
        return float(config.rules.poll_automation.cooldown)
    return spec.cooldown_minutes


def is_enabled_by_config(spec: ToolSpec, config: AutonomousConfig) -> bool:
    """Check the tool's configuration gate."""
    if spec.risk == RiskLevel.HIGH and not config.enabled:
        return False

    rules = config.rules
    if spec.gate == ToolGate.MODERATION:
        return rules.spam_detection.enabled or rules.toxicity_detection.enabled
    if spec.gate == ToolGate.MESSAGING:
        return rules.chat_engagement.enabled
    if spec.gate == ToolGate.POLLS:
        return rules.poll_automation.enabled
    return True

