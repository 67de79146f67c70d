"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings

ModerationAction = Literal["timeout", "ban", "warn"]


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SpamDetectionConfig(Base):
    """Spam detection rule."""

    enabled: bool = True
    threshold: int = 10  # Messages per minute from the same user
    action: ModerationAction = "timeout"
    duration: int | None = 60  # Timeout duration in seconds


class ToxicityDetectionConfig(Base):
    """Toxicity detection rule."""

    enabled: bool = True
    severity_threshold: int = 6  # 1-10 scale
    action: ModerationAction = "timeout"
    duration: int | None = 300


class ChatEngagementConfig(Base):
    """Chat engagement rule (messages sent to chat)."""

    enabled: bool = True
    quiet_period_threshold: int = 5  # Minutes of no chat
    responses: list[str] = Field(
        default_factory=lambda: [
            "How's everyone doing? What would you like to see next?",
            "Thanks for hanging out in chat!",
        ]
    )


class PollAutomationConfig(Base):
    """Poll automation rule."""

    enabled: bool = False
    trigger: Literal["viewerRequest", "scheduled", "gameEvent"] = "viewerRequest"
    cooldown: int = 15  # Minutes between polls


class RulesConfig(Base):
    """All autonomous rules."""

    spam_detection: SpamDetectionConfig = Field(default_factory=SpamDetectionConfig)
    toxicity_detection: ToxicityDetectionConfig = Field(default_factory=ToxicityDetectionConfig)
    chat_engagement: ChatEngagementConfig = Field(default_factory=ChatEngagementConfig)
    poll_automation: PollAutomationConfig = Field(default_factory=PollAutomationConfig)


class AutonomousConfig(Base):
    """Autonomous monitoring configuration."""

    enabled: bool = False
    monitoring_interval_s: float = 30.0
    action_pause_s: float = 1.0  # Pause between consecutive actions in one cycle
    rules: RulesConfig = Field(default_factory=RulesConfig)


class FeedbackConfig(Base):
    """Feedback log store configuration."""

    feedback_dir: str = "~/.chatpilot/feedback"
    retention_days: int = 30

    @property
    def feedback_path(self) -> Path:
        """Get expanded feedback directory path."""
        return Path(self.feedback_dir).expanduser()


class OracleConfig(Base):
    """Language-model oracle configuration (LiteLLM)."""

    model: str = "anthropic/claude-sonnet-4-5"
    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] | None = None
    temperature: float = 0.1
    max_tokens: int = 2048


class Config(BaseSettings):
    """Root configuration for chatpilot."""

    autonomous: AutonomousConfig = Field(default_factory=AutonomousConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)

    model_config = ConfigDict(env_prefix="CHATPILOT_", env_nested_delimiter="__")
