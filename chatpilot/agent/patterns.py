"""
Pattern analysis: score a batch of chat messages through the oracle.

Five independent queries run in parallel for every batch:
- toxicity: harassment, hate speech, threats
- spam: promotion, repetition, flooding (uses per-user message rates)
- engagement: questions and interaction opportunities
- sentiment: overall mood of the batch
- activity: how lively the chat is

Each query degrades on its own: an oracle error or an unparseable answer
turns only that query into an empty/neutral result. Only when every query
fails does the whole analysis fall back to a neutral result.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, TypeVar

from loguru import logger

from chatpilot.agent.parsing import (
    ActivityReading,
    EngagementFinding,
    OracleParseError,
    SentimentReading,
    SpamFinding,
    ToxicityFinding,
    parse_list,
    parse_object,
)
from chatpilot.bus.events import ChatMessage
from chatpilot.providers.base import Oracle
from chatpilot.utils.helpers import as_utc, utc_now

T = TypeVar("T")

# Materiality floors (scores are 1-10)
TOXICITY_FLOOR = 4
SPAM_FLOOR = 4
ENGAGEMENT_FLOOR = 6

# Confidence assigned to oracle-derived patterns, per query
TOXICITY_CONFIDENCE = 0.9
SPAM_CONFIDENCE = 0.8
ENGAGEMENT_CONFIDENCE = 0.7

# Trend buffer retention
TREND_WINDOW = timedelta(minutes=10)
TREND_CAP = 50


class PatternType(str, Enum):
    """Kinds of chat patterns."""

    SPAM = "spam"
    TOXICITY = "toxicity"
    QUIET = "quiet"
    EXCITEMENT = "excitement"
    QUESTION = "question"
    REQUEST = "request"


@dataclass
class Pattern:
    """A typed observation extracted from a batch of chat messages."""

    type: PatternType
    severity: float  # 1-10
    confidence: float  # 0-1
    users: list[str] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def severity_band(self) -> int:
        """Coarse severity bucket (floor(severity / 2)) used for learning keys."""
        return int(self.severity // 2)

    @property
    def key(self) -> str:
        """Learning key, e.g. "toxicity-4"."""
        return f"{self.type.value}-{self.severity_band}"

    def describe(self) -> str:
        return f"{self.type.value} ({self.severity:g}/10)"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.type.value,
            "severity": self.severity,
            "confidence": self.confidence,
            "users": list(self.users),
            "messages": list(self.messages),
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Pattern":
        """Create from dictionary (JSON deserialization)."""
        timestamp = utc_now()
        if data.get("timestamp"):
            try:
                timestamp = datetime.fromisoformat(data["timestamp"])
            except (ValueError, TypeError):
                pass

        return cls(
            type=PatternType(data["type"].lower()),
            severity=float(data["severity"]),
            confidence=float(data.get("confidence", 1.0)),
            users=list(data.get("users", [])),
            messages=list(data.get("messages", [])),
            timestamp=timestamp,
            metadata=dict(data.get("metadata", {})),
        )


@dataclass
class AnalysisResult:
    """Outcome of analysing one batch of messages."""

    patterns: list[Pattern] = field(default_factory=list)
    overall_sentiment: float = 0.0  # -1..1
    activity_level: float = 0.0  # 0..10
    needs_attention: bool = False
    recommendations: list[str] = field(default_factory=list)

    def with_patterns(self, patterns: list[Pattern]) -> "AnalysisResult":
        """Copy of this result restricted to ``patterns``."""
        return replace(self, patterns=list(patterns))

    def patterns_of(self, pattern_type: PatternType) -> list[Pattern]:
        return [p for p in self.patterns if p.type == pattern_type]


def _numbered(lines: list[str]) -> str:
    return "\n".join(f"{i}. {line}" for i, line in enumerate(lines, 1))


ANALYSIS_PROMPTS: dict[str, str] = {
    "toxicity": """You are a chat moderation AI. Analyze chat messages for toxic behavior including harassment, hate speech, personal attacks, threats, discrimination, or severely inappropriate language. Rate toxicity on a scale of 1-10 where:
1-3: Mildly rude or inappropriate
4-6: Moderately toxic, personal attacks
7-8: Severely toxic, harassment
9-10: Extreme toxicity, threats, hate speech""",

    "spam": """You are a chat spam detection AI. Identify spam patterns including:
- Promotional content (external links, channel promotion)
- Repetitive messages from same user
- Bot-like behavior
- Scam attempts
- Excessive emote spam

Rate spam severity 1-10 where:
1-3: Minor repetition or borderline promotional
4-6: Clear spam attempts
7-8: Aggressive spam or scams
9-10: Malicious spam or bot attacks""",

    "engagement": """You are a chat engagement AI. Identify opportunities for streamer engagement including:
- Direct questions to the streamer
- Requests for interaction
- Conversation starters
- Community building moments

Rate engagement opportunity 1-10 based on how much it would benefit from streamer response.""",

    "sentiment": """You are a chat sentiment analysis AI. Analyze the overall mood and sentiment of chat messages.

Consider:
- Positive emotions: excitement, happiness, support
- Negative emotions: frustration, anger, disappointment
- Neutral: factual statements, casual conversation

Rate overall sentiment from -1 (very negative) to +1 (very positive).""",

    "activity": """You are a chat activity analysis AI. Determine if the chat is:
- Very active (lots of messages, many users participating)
- Moderately active (steady conversation)
- Quiet (few messages, long gaps)
- Dead (no recent activity)

Consider both message frequency and user engagement quality.""",
}


def toxicity_prompt(lines: list[str]) -> str:
    return (
        f"{ANALYSIS_PROMPTS['toxicity']}\n\n"
        "Analyze these chat messages for toxicity. For each message, provide:\n"
        "1. Toxicity score (1-10)\n"
        "2. Reason for the score\n"
        "3. Recommended action (ignore/warn/timeout/ban)\n\n"
        f"Messages to analyze:\n{_numbered(lines)}\n\n"
        'Respond in JSON format: [{"messageIndex": number, "toxicityScore": number, '
        '"reason": string, "action": string, "username": string}]'
    )


def spam_prompt(lines: list[str], user_rates: dict[str, int], threshold: int | None = None) -> str:
    threshold_line = ""
    if threshold:
        threshold_line = f"Users sending more than {threshold} messages per minute are likely flooding.\n\n"
    return (
        f"{ANALYSIS_PROMPTS['spam']}\n\n"
        "Analyze for spam patterns. Consider message content and user frequency.\n\n"
        f"Messages:\n{_numbered(lines)}\n\n"
        f"User message counts in last minute: {json.dumps(user_rates, sort_keys=True)}\n\n"
        f"{threshold_line}"
        'Respond in JSON: [{"messageIndex": number, "spamScore": number, '
        '"reason": string, "action": string, "username": string}]'
    )


def engagement_prompt(lines: list[str]) -> str:
    return (
        f"{ANALYSIS_PROMPTS['engagement']}\n\n"
        f"Identify engagement opportunities in these messages:\n\n{_numbered(lines)}\n\n"
        'Respond in JSON: [{"messageIndex": number, "engagementScore": number, '
        '"reason": string, "suggestedResponse": string, "username": string}]'
    )


def sentiment_prompt(lines: list[str]) -> str:
    return (
        f"{ANALYSIS_PROMPTS['sentiment']}\n\n"
        f"Analyze the overall sentiment of this chat segment:\n\n{_numbered(lines)}\n\n"
        'Respond in JSON: {"overallSentiment": number, "reasoning": string, '
        '"keyIndicators": string[]}'
    )


def activity_prompt(lines: list[str], time_span: str, unique_users: int) -> str:
    return (
        f"{ANALYSIS_PROMPTS['activity']}\n\n"
        f"Analyze chat activity level for the last {time_span}:\n\n"
        f"Messages ({len(lines)} total from {unique_users} unique users):\n{_numbered(lines)}\n\n"
        'Respond in JSON: {"activityLevel": number, "description": string, '
        '"recommendations": string[]}'
    )


class PatternAnalyzer:
    """
    Turns message batches into typed Patterns using the oracle.

    Also keeps a short trend buffer of recent patterns (10 minutes, at
    most 50 items) for diagnostics.
    """

    def __init__(self, oracle: Oracle, spam_threshold: int | None = None):
        """
        Initialize the analyzer.

        Args:
            oracle: Oracle used for every query.
            spam_threshold: Messages-per-minute hint included in the spam prompt.
        """
        self.oracle = oracle
        self.spam_threshold = spam_threshold
        self._recent_patterns: list[Pattern] = []

    async def analyze(
        self,
        messages: list[ChatMessage],
        user_rates: dict[str, int] | None = None,
    ) -> AnalysisResult:
        """
        Analyze a batch of chat messages.

        Args:
            messages: Messages in arrival order.
            user_rates: Messages per user in the trailing minute. Derived from
                the batch when not supplied.

        Returns:
            AnalysisResult; never raises for oracle problems.
        """
        if not messages:
            return AnalysisResult(
                activity_level=0.0,
                recommendations=["No recent chat activity"],
            )

        self._prune_trends()

        lines = [m.to_line() for m in messages]
        rates = user_rates if user_rates is not None else self._rates_from_batch(messages)
        unique_users = len({m.username for m in messages})

        toxicity, spam, engagement, sentiment, activity = await asyncio.gather(
            self._query("toxicity", toxicity_prompt(lines), lambda r: parse_list(r, ToxicityFinding)),
            self._query(
                "spam",
                spam_prompt(lines, rates, self.spam_threshold),
                lambda r: parse_list(r, SpamFinding),
            ),
            self._query("engagement", engagement_prompt(lines), lambda r: parse_list(r, EngagementFinding)),
            self._query("sentiment", sentiment_prompt(lines), lambda r: parse_object(r, SentimentReading)),
            self._query(
                "activity",
                activity_prompt(lines, self._describe_span(messages), unique_users),
                lambda r: parse_object(r, ActivityReading),
            ),
        )

        if all(result is None for result in (toxicity, spam, engagement, sentiment, activity)):
            logger.warning("All oracle queries failed, using neutral analysis for {} messages", len(messages))
            return self._fallback_analysis(messages)

        sentiment = sentiment or SentimentReading(overall_sentiment=0.0, reasoning="Analysis failed")
        activity = activity or ActivityReading(
            activity_level=5.0,
            description="Moderate activity",
            recommendations=["Monitor chat"],
        )

        patterns = self._convert_to_patterns(messages, toxicity or [], spam or [], engagement or [])
        needs_attention = self.determine_attention_needed(patterns)
        recommendations = self._generate_recommendations(patterns, sentiment, activity)

        self._recent_patterns = (self._recent_patterns + patterns)[-TREND_CAP:]

        logger.debug(
            "Analysis: {} patterns, sentiment={:.2f}, activity={:.1f}, attention={}",
            len(patterns),
            sentiment.overall_sentiment,
            activity.activity_level,
            needs_attention,
        )

        return AnalysisResult(
            patterns=patterns,
            overall_sentiment=sentiment.overall_sentiment,
            activity_level=activity.activity_level,
            needs_attention=needs_attention,
            recommendations=recommendations,
        )

    async def _query(self, name: str, prompt: str, parse: Callable[[str], T]) -> T | None:
        """Run one oracle query; None means this query degraded."""
        try:
            response = await self.oracle.analyze(prompt)
            return parse(response)
        except OracleParseError as e:
            logger.warning("{} analysis response unparseable: {}", name, e)
        except Exception as e:
            logger.warning("{} analysis oracle call failed: {}", name, e)
        return None

    def _convert_to_patterns(
        self,
        messages: list[ChatMessage],
        toxicity: list[ToxicityFinding],
        spam: list[SpamFinding],
        engagement: list[EngagementFinding],
    ) -> list[Pattern]:
        """Convert oracle findings into Patterns, applying materiality floors."""
        patterns: list[Pattern] = []
        now = utc_now()

        def _target(index: int) -> ChatMessage | None:
            position = index - 1  # prompts number messages from 1
            if 0 <= position < len(messages):
                return messages[position]
            return None

        for finding in toxicity:
            if finding.toxicity_score < TOXICITY_FLOOR:
                continue
            message = _target(finding.message_index)
            if message is None:
                continue
            patterns.append(Pattern(
                type=PatternType.TOXICITY,
                severity=min(10.0, finding.toxicity_score),
                confidence=TOXICITY_CONFIDENCE,
                users=[finding.username or message.username],
                messages=[message.content],
                timestamp=now,
                metadata={
                    "reason": finding.reason,
                    "recommended_action": finding.action,
                    "ai_generated": True,
                },
            ))

        for finding in spam:
            if finding.spam_score < SPAM_FLOOR:
                continue
            message = _target(finding.message_index)
            if message is None:
                continue
            patterns.append(Pattern(
                type=PatternType.SPAM,
                severity=min(10.0, finding.spam_score),
                confidence=SPAM_CONFIDENCE,
                users=[finding.username or message.username],
                messages=[message.content],
                timestamp=now,
                metadata={
                    "reason": finding.reason,
                    "recommended_action": finding.action,
                    "ai_generated": True,
                },
            ))

        for finding in engagement:
            if finding.engagement_score < ENGAGEMENT_FLOOR:
                continue
            message = _target(finding.message_index)
            if message is None:
                continue
            patterns.append(Pattern(
                type=PatternType.QUESTION,
                severity=min(10.0, finding.engagement_score),
                confidence=ENGAGEMENT_CONFIDENCE,
                users=[finding.username or message.username],
                messages=[message.content],
                timestamp=now,
                metadata={
                    "reason": finding.reason,
                    "suggested_response": finding.suggested_response,
                    "ai_generated": True,
                },
            ))

        return patterns

    @staticmethod
    def determine_attention_needed(patterns: list[Pattern]) -> bool:
        """Severe spam (>=7), toxicity (>=6), or two or more spam patterns."""
        spam = [p for p in patterns if p.type == PatternType.SPAM]
        if len(spam) >= 2:
            return True
        return any(
            (p.type == PatternType.SPAM and p.severity >= 7)
            or (p.type == PatternType.TOXICITY and p.severity >= 6)
            for p in patterns
        )

    @staticmethod
    def _generate_recommendations(
        patterns: list[Pattern],
        sentiment: SentimentReading,
        activity: ActivityReading,
    ) -> list[str]:
        recommendations: list[str] = []

        toxic = [p for p in patterns if p.type == PatternType.TOXICITY]
        if toxic:
            worst = max(toxic, key=lambda p: p.severity)
            action = worst.metadata.get("recommended_action") or "Moderate"
            recommendations.append(f"{action} {worst.users[0]} - {worst.metadata.get('reason', '')}")

        spam = [p for p in patterns if p.type == PatternType.SPAM]
        if spam:
            worst = max(spam, key=lambda p: p.severity)
            action = worst.metadata.get("recommended_action") or "Address spam from"
            recommendations.append(f"{action} {worst.users[0]} - {worst.metadata.get('reason', '')}")

        questions = [p for p in patterns if p.type == PatternType.QUESTION]
        if questions:
            recommendations.append(
                questions[0].metadata.get("suggested_response") or "Engage with viewer questions"
            )

        if sentiment.overall_sentiment < -0.3:
            recommendations.append("Chat sentiment is negative - consider addressing concerns or changing topic")
        elif sentiment.overall_sentiment > 0.5:
            recommendations.append("Great positive energy in chat - good time for interaction")

        recommendations.extend(activity.recommendations)

        return recommendations or ["Chat is healthy - no immediate action needed"]

    @staticmethod
    def _fallback_analysis(messages: list[ChatMessage]) -> AnalysisResult:
        return AnalysisResult(
            patterns=[],
            overall_sentiment=0.0,
            activity_level=float(min(10, len(messages))),
            needs_attention=False,
            recommendations=["AI analysis unavailable - manual review recommended"],
        )

    @staticmethod
    def _rates_from_batch(messages: list[ChatMessage]) -> dict[str, int]:
        cutoff = utc_now() - timedelta(seconds=60)
        rates: dict[str, int] = {}
        for message in messages:
            if as_utc(message.timestamp) >= cutoff:
                rates[message.username] = rates.get(message.username, 0) + 1
        return rates

    @staticmethod
    def _describe_span(messages: list[ChatMessage]) -> str:
        first = as_utc(messages[0].timestamp)
        last = as_utc(messages[-1].timestamp)
        minutes = max(1, round(abs((last - first).total_seconds()) / 60))
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    def _prune_trends(self) -> None:
        cutoff = utc_now() - TREND_WINDOW
        self._recent_patterns = [p for p in self._recent_patterns if as_utc(p.timestamp) >= cutoff]

    def pattern_trends(self) -> dict[str, int]:
        """Count of recent patterns by type."""
        self._prune_trends()
        trends: dict[str, int] = {}
        for pattern in self._recent_patterns:
            trends[pattern.type.value] = trends.get(pattern.type.value, 0) + 1
        return trends
