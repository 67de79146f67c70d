"""
Decision engine: turn an analysis into concrete action decisions.

Flow per call:
1. Candidate tools = known tools - tools on cooldown - tools gated off by config
2. No candidates -> no decisions (and no oracle call)
3. Ask the oracle which actions to take (JSON array of proposals)
4. Ground each proposal in a detected pattern; drop ungrounded ones
5. Synthesize wording-heavy parameters with a second, narrower oracle call
6. Stamp confidence/timestamp and put the tool on cooldown

If the oracle fails or answers with something unparseable, fixed rules
take over (severe toxicity and spam only). The cooldown ledger is
updated when a tool is proposed, not when it is executed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from chatpilot.agent.parsing import DecisionProposal, parse_list, parse_parameters
from chatpilot.agent.patterns import AnalysisResult, Pattern, PatternType
from chatpilot.agent.tools import (
    TOOLS,
    ToolSpec,
    find_by_name,
    is_enabled_by_config,
    tool_cooldown_minutes,
)
from chatpilot.config.schema import AutonomousConfig
from chatpilot.providers.base import Oracle
from chatpilot.utils.helpers import as_utc, utc_now

DEFAULT_CONFIDENCE = 0.7

# Fallback rule thresholds
FALLBACK_MIN_CONFIDENCE = 0.7
FALLBACK_TOXICITY_SEVERITY = 7
FALLBACK_SPAM_SEVERITY = 6
FALLBACK_DECISION_CONFIDENCE = 0.6


@dataclass(frozen=True)
class ActionDecision:
    """
    A proposed invocation of an external tool.

    Immutable: once executed, the record is kept exactly as decided.
    ``patterns`` is the provenance and may be empty for manual or
    ungrounded decisions.
    """

    action: str
    parameters: dict[str, Any]
    reason: str
    confidence: float
    patterns: tuple[Pattern, ...] = ()
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "action": self.action,
            "parameters": dict(self.parameters),
            "reason": self.reason,
            "confidence": self.confidence,
            "patterns": [p.to_dict() for p in self.patterns],
            "timestamp": self.timestamp.isoformat(),
        }


class CooldownLedger:
    """
    Per-tool last-proposal timestamps.

    Owned by the monitor and shared by reference with the decision engine;
    all mutation happens inside a serialized cycle.
    """

    def __init__(self) -> None:
        self._last_used: dict[str, datetime] = {}

    def mark(self, tool: str, at: datetime | None = None) -> None:
        self._last_used[tool] = as_utc(at or utc_now())

    def last_used(self, tool: str) -> datetime | None:
        return self._last_used.get(tool)

    def remaining(self, tool: str, cooldown_minutes: float | None, now: datetime | None = None) -> timedelta:
        """Time left before ``tool`` may be proposed again (zero when ready)."""
        last = self._last_used.get(tool)
        if last is None or not cooldown_minutes:
            return timedelta(0)
        elapsed = as_utc(now or utc_now()) - last
        return max(timedelta(0), timedelta(minutes=cooldown_minutes) - elapsed)

    def is_cooling(self, tool: str, cooldown_minutes: float | None, now: datetime | None = None) -> bool:
        return self.remaining(tool, cooldown_minutes, now) > timedelta(0)

    def snapshot(self) -> dict[str, datetime]:
        return dict(self._last_used)

    def clear(self) -> None:
        self._last_used.clear()


def decision_prompt(
    analysis: AnalysisResult,
    tools: list[ToolSpec],
    config: AutonomousConfig,
) -> str:
    """Build the action-selection prompt."""
    rules = config.rules

    def _flag(enabled: bool) -> str:
        return "Enabled" if enabled else "Disabled"

    pattern_blocks = []
    for p in analysis.patterns:
        suggestion = p.metadata.get("recommended_action") or p.metadata.get("suggested_response") or "N/A"
        pattern_blocks.append(
            f"- Type: {p.type.value}\n"
            f"  Severity: {p.severity:g}/10\n"
            f"  Confidence: {p.confidence}\n"
            f"  Users: {', '.join(p.users)}\n"
            f"  Messages: {' | '.join(p.messages)}\n"
            f"  AI Reason: {p.metadata.get('reason') or 'N/A'}\n"
            f"  AI Recommendation: {suggestion}"
        )

    return (
        "You are an autonomous live-stream chat management AI. Based on the chat analysis, "
        "decide what actions to take using the available tools.\n\n"
        "CHAT ANALYSIS:\n"
        f"- Overall Sentiment: {analysis.overall_sentiment} (-1 to 1 scale)\n"
        f"- Activity Level: {analysis.activity_level} (0-10 scale)\n"
        f"- Needs Attention: {analysis.needs_attention}\n"
        f"- Recommendations: {', '.join(analysis.recommendations)}\n\n"
        "DETECTED PATTERNS:\n"
        f"{chr(10).join(pattern_blocks) or 'None'}\n\n"
        "AVAILABLE TOOLS:\n"
        f"{chr(10).join(t.describe() for t in tools)}\n\n"
        "CONFIGURATION:\n"
        f"- Spam Detection: {_flag(rules.spam_detection.enabled)} (Action: {rules.spam_detection.action})\n"
        f"- Toxicity Detection: {_flag(rules.toxicity_detection.enabled)} "
        f"(Action: {rules.toxicity_detection.action}, severity threshold: "
        f"{rules.toxicity_detection.severity_threshold})\n"
        f"- Chat Engagement: {_flag(rules.chat_engagement.enabled)}\n"
        f"- Poll Automation: {_flag(rules.poll_automation.enabled)}\n\n"
        "DECISION CRITERIA:\n"
        "- Only take action if patterns have high confidence (>0.6) and appropriate severity\n"
        "- Prioritize moderation for toxicity/spam patterns\n"
        "- Consider engagement opportunities for positive interactions\n"
        "- Be conservative with high-risk actions (timeouts/bans)\n"
        "- Don't create multiple polls/predictions in short succession\n"
        "- Match actions to pattern severity and configuration settings\n\n"
        "Respond with JSON array of actions to take (can be empty if no action needed):\n"
        '[{"action": "toolName", "parameters": {"param1": "value1"}, '
        '"reason": "Detailed explanation of why this action was chosen", '
        '"confidence": 0.8, "targetPattern": "toxicity|spam|question|etc"}]'
    )


def parameter_prompt(tool: ToolSpec, pattern: Pattern, context: str) -> str:
    """Build the narrower parameter-synthesis prompt for one tool."""
    suggestion = (
        pattern.metadata.get("recommended_action") or pattern.metadata.get("suggested_response") or "N/A"
    )
    params = "\n".join(
        f"- {p.name} ({p.type}{', required' if p.required else ''}): {p.description}" for p in tool.params
    )
    return (
        f'You are generating parameters for the tool "{tool.name}" based on a detected chat pattern.\n\n'
        "PATTERN DETAILS:\n"
        f"- Type: {pattern.type.value}\n"
        f"- Severity: {pattern.severity:g}/10\n"
        f"- Users: {', '.join(pattern.users)}\n"
        f"- Messages: {' | '.join(pattern.messages)}\n"
        f"- AI Analysis: {pattern.metadata.get('reason') or 'N/A'}\n"
        f"- AI Suggestion: {suggestion}\n\n"
        f"CONTEXT: {context}\n\n"
        f"PARAMETERS:\n{params}\n\n"
        f'Generate appropriate parameters for the "{tool.name}" action. Be specific and contextual.\n\n'
        'Respond with JSON object containing the parameters:\n{"parameter_name": "parameter_value"}'
    )


class DecisionEngine:
    """
    Decides which tools to invoke for an analysis.

    Holds a reference to the monitor's CooldownLedger; a tool on cooldown
    is never offered to the oracle, never accepted from it, and never
    chosen by the fallback rules.
    """

    def __init__(
        self,
        oracle: Oracle,
        config: AutonomousConfig,
        ledger: CooldownLedger | None = None,
        tools: tuple[ToolSpec, ...] = TOOLS,
    ):
        self.oracle = oracle
        self.config = config
        self.ledger = ledger if ledger is not None else CooldownLedger()
        self.tools = tools

    def update_config(self, config: AutonomousConfig) -> None:
        self.config = config

    def get_tool(self, name: str) -> ToolSpec | None:
        return find_by_name(name, self.tools)

    def _on_cooldown(self, spec: ToolSpec, now: datetime) -> bool:
        return self.ledger.is_cooling(spec.name, tool_cooldown_minutes(spec, self.config), now)

    def available_tools(self, now: datetime | None = None) -> list[ToolSpec]:
        """Known tools that are off cooldown and enabled by configuration."""
        now = now or utc_now()
        return [
            spec for spec in self.tools
            if not self._on_cooldown(spec, now) and is_enabled_by_config(spec, self.config)
        ]

    async def decide(self, analysis: AnalysisResult, now: datetime | None = None) -> list[ActionDecision]:
        """
        Produce action decisions for an analysis.

        Args:
            analysis: Analysis (usually already filtered to significant patterns).
            now: Decision time; defaults to the current UTC time.

        Returns:
            Decisions in the order they should be executed.
        """
        now = as_utc(now or utc_now())
        candidates = self.available_tools(now)
        if not candidates:
            logger.debug("No tools available (cooldown/config), skipping decision")
            return []

        try:
            decisions = await self._oracle_decisions(analysis, candidates, now)
        except Exception as e:
            logger.warning("Decision oracle failed, applying fallback rules: {}", e)
            decisions = self.fallback_decisions(analysis, candidates, now)

        if decisions:
            logger.info(
                "Decided {} action(s): {}",
                len(decisions),
                ", ".join(d.action for d in decisions),
            )
        return decisions

    async def _oracle_decisions(
        self,
        analysis: AnalysisResult,
        candidates: list[ToolSpec],
        now: datetime,
    ) -> list[ActionDecision]:
        response = await self.oracle.analyze(decision_prompt(analysis, candidates, self.config))
        proposals = parse_list(response, DecisionProposal)

        candidate_names = {spec.name for spec in candidates}
        decisions: list[ActionDecision] = []

        for proposal in proposals:
            spec = self.get_tool(proposal.action)
            if spec is None:
                logger.warning("Ignoring proposal for unknown tool: {}", proposal.action)
                continue
            if spec.name not in candidate_names or self._on_cooldown(spec, now):
                logger.debug("Ignoring proposal for unavailable tool: {}", spec.name)
                continue

            target: Pattern | None = None
            if proposal.target_pattern:
                target = self._resolve_pattern(proposal.target_pattern, analysis)
                if target is None:
                    logger.debug(
                        "Dropping {} proposal: pattern '{}' not found",
                        spec.name,
                        proposal.target_pattern,
                    )
                    continue

            parameters = dict(proposal.parameters)
            if target is not None and spec.synthesize_parameters:
                generated = await self._generate_parameters(
                    spec, target, self.context_for_pattern(target, analysis)
                )
                parameters.update(generated)

            parameters = self._fill_required(spec, parameters, target)
            if parameters is None:
                continue

            confidence = proposal.confidence if proposal.confidence is not None else DEFAULT_CONFIDENCE
            decision = ActionDecision(
                action=spec.name,
                parameters=parameters,
                reason=proposal.reason,
                confidence=max(0.0, min(1.0, confidence)),
                patterns=(target,) if target is not None else (),
                timestamp=now,
            )
            # Cooldown starts at proposal time, even if execution later fails.
            self.ledger.mark(spec.name, now)
            decisions.append(decision)

        return decisions

    @staticmethod
    def _resolve_pattern(target: str, analysis: AnalysisResult) -> Pattern | None:
        wanted = target.strip().lower()
        for pattern in analysis.patterns:
            if pattern.type.value == wanted:
                return pattern
        return None

    def _fill_required(
        self,
        spec: ToolSpec,
        parameters: dict[str, Any],
        pattern: Pattern | None,
    ) -> dict[str, Any] | None:
        """Fill missing required parameters from canned defaults; None if impossible."""
        missing = [name for name in spec.required_params if parameters.get(name) in (None, "")]
        if not missing:
            return parameters

        defaults = self.fallback_parameters(spec.name, pattern)
        for name in missing:
            if defaults.get(name) not in (None, ""):
                parameters[name] = defaults[name]

        still_missing = [name for name in spec.required_params if parameters.get(name) in (None, "")]
        if still_missing:
            logger.warning("Dropping {} proposal: missing required parameters {}", spec.name, still_missing)
            return None
        return parameters

    async def _generate_parameters(self, spec: ToolSpec, pattern: Pattern, context: str) -> dict[str, Any]:
        """Ask the oracle for situational parameters; canned values on failure."""
        try:
            response = await self.oracle.analyze(parameter_prompt(spec, pattern, context))
            return parse_parameters(response)
        except Exception as e:
            logger.warning("Parameter generation failed for {}, using defaults: {}", spec.name, e)
            return self.fallback_parameters(spec.name, pattern)

    def fallback_parameters(self, action: str, pattern: Pattern | None) -> dict[str, Any]:
        """Deterministic parameters keyed by action and pattern type."""
        rules = self.config.rules
        pattern_type = pattern.type if pattern is not None else None

        if action in ("timeoutUser", "banUser"):
            if pattern is None or not pattern.users:
                return {}
            user = pattern.users[0]
            if action == "banUser":
                return {"usernameOrDescriptor": user, "reason": f"Severe {pattern_type.value} violation"}
            params: dict[str, Any] = {
                "usernameOrDescriptor": user,
                "reason": f"{pattern_type.value} behavior detected",
            }
            duration = (
                rules.toxicity_detection.duration
                if pattern_type == PatternType.TOXICITY
                else rules.spam_detection.duration
            )
            if duration:
                params["duration"] = duration
            return params

        if action == "sendMessageToChat":
            if pattern_type == PatternType.QUESTION:
                return {"message": "Thanks for the question! Let me think about that..."}
            if pattern_type == PatternType.QUIET:
                responses = rules.chat_engagement.responses
                return {"message": responses[0] if responses else "How's everyone doing? What would you like to see next?"}
            if pattern_type == PatternType.EXCITEMENT:
                return {"message": "Love the energy in chat right now!"}
            return {"message": "Thanks for being part of the chat!"}

        if action == "createTwitchPoll":
            return {"title": "What should we do next?", "choices": "Option A, Option B, Option C", "duration": 300}

        if action == "createTwitchPrediction":
            return {"title": "How will this round go?", "outcomes": "Win, Lose", "duration": 300}

        if action == "updateStreamTitle":
            return {"title": "Live now - come hang out in chat!"}

        return {}

    @staticmethod
    def context_for_pattern(pattern: Pattern, analysis: AnalysisResult) -> str:
        """One-line situational summary for parameter synthesis."""
        if analysis.overall_sentiment > 0:
            mood = "positive"
        elif analysis.overall_sentiment < 0:
            mood = "negative"
        else:
            mood = "neutral"

        contexts = [
            f"Overall chat sentiment: {mood}",
            f"Activity level: {analysis.activity_level:g}/10",
            f"Pattern confidence: {pattern.confidence}",
            f"Severity: {pattern.severity:g}/10",
        ]
        if pattern.metadata.get("ai_generated") and pattern.metadata.get("reason"):
            contexts.append(f"AI detected: {pattern.metadata['reason']}")
        return ", ".join(contexts)

    def fallback_decisions(
        self,
        analysis: AnalysisResult,
        candidates: list[ToolSpec] | None = None,
        now: datetime | None = None,
    ) -> list[ActionDecision]:
        """
        Rule-based decisions used when the oracle is unavailable.

        - toxicity, confidence >= 0.7, severity >= 7 -> configured default action
        - spam, confidence >= 0.7, severity >= 6 -> timeoutUser

        Never calls the oracle.
        """
        now = as_utc(now or utc_now())
        if candidates is None:
            candidates = self.available_tools(now)
        candidate_names = {spec.name for spec in candidates}
        rules = self.config.rules
        decisions: list[ActionDecision] = []

        for pattern in analysis.patterns:
            if pattern.confidence < FALLBACK_MIN_CONFIDENCE:
                continue

            user = pattern.users[0] if pattern.users else "unknown"
            if (
                pattern.type == PatternType.TOXICITY
                and pattern.severity >= FALLBACK_TOXICITY_SEVERITY
                and rules.toxicity_detection.enabled
            ):
                action = "banUser" if rules.toxicity_detection.action == "ban" else "timeoutUser"
                parameters: dict[str, Any] = {"usernameOrDescriptor": user, "reason": "Toxic behavior detected"}
                if action == "timeoutUser" and rules.toxicity_detection.duration:
                    parameters["duration"] = rules.toxicity_detection.duration
                reason = f"Fallback action for high toxicity ({pattern.severity:g}/10)"
            elif (
                pattern.type == PatternType.SPAM
                and pattern.severity >= FALLBACK_SPAM_SEVERITY
                and rules.spam_detection.enabled
            ):
                action = "timeoutUser"
                parameters = {"usernameOrDescriptor": user, "reason": "Spam detected"}
                if rules.spam_detection.duration:
                    parameters["duration"] = rules.spam_detection.duration
                reason = f"Fallback action for spam ({pattern.severity:g}/10)"
            else:
                continue

            spec = self.get_tool(action)
            if spec is None or spec.name not in candidate_names or self._on_cooldown(spec, now):
                logger.debug("Fallback {} skipped: tool unavailable", action)
                continue

            decisions.append(ActionDecision(
                action=action,
                parameters=parameters,
                reason=reason,
                confidence=FALLBACK_DECISION_CONFIDENCE,
                patterns=(pattern,),
                timestamp=now,
            ))
            self.ledger.mark(action, now)

        return decisions

    def cooldown_status(self, now: datetime | None = None) -> dict[str, int]:
        """Seconds of cooldown remaining per tool (0 = ready)."""
        now = now or utc_now()
        return {
            spec.name: math.ceil(
                self.ledger.remaining(spec.name, tool_cooldown_minutes(spec, self.config), now).total_seconds()
            )
            for spec in self.tools
        }

