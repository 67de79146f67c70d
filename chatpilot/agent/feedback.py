"""
Feedback and learning store for executed actions.

Every executed decision becomes a FeedbackEntry. Ratings and outcomes
arrive later, out of band, and are attached to the entry nearest in time
(within 60 seconds). Entries are kept in memory for metrics and mirrored
to date-partitioned, append-only markdown logs:

    feedback_dir/
        actions-YYYY-MM-DD.md         one section per recorded action
        feedback-YYYY-MM-DD.md        entry snapshot on record and on each update
        user-feedback-YYYY-MM-DD.md   one section per attached rating
        learning-insights.md          overwritten on each recomputation
        reports/daily-YYYY-MM-DD.md   one per date

Dates are UTC calendar dates of the entry timestamp. Logs are narrative
records for review; metrics are always recomputed from the in-memory
entries, never parsed back from disk.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

import frontmatter
from loguru import logger

from chatpilot.agent.decisions import ActionDecision
from chatpilot.config.schema import FeedbackConfig
from chatpilot.utils.helpers import as_utc, ensure_dir, utc_date_str, utc_now

MATCH_WINDOW = timedelta(seconds=60)
METRICS_WINDOW_HOURS = 168  # one week
LEARNING_WINDOW_HOURS = 24

# Minimum samples before a recommendation is made
MIN_ACTION_SAMPLES = 5
MIN_PATTERN_SAMPLES = 3
MIN_TOTAL_SAMPLES = 10
MIN_RANKING_SAMPLES = 2

_DATED_FILE = re.compile(r"^(?P<prefix>[a-z][a-z-]*?)-(?P<date>\d{4}-\d{2}-\d{2})\.md$")


class FeedbackSource(str, Enum):
    CHAT = "chat"
    MANUAL = "manual"
    STREAMER = "streamer"


@dataclass
class UserFeedback:
    rating: int  # 1-5
    comment: str | None = None
    source: FeedbackSource = FeedbackSource.CHAT
    recorded_at: datetime = field(default_factory=utc_now)


@dataclass
class Outcome:
    effective: bool
    chat_response: str | None = None
    side_effects: list[str] = field(default_factory=list)
    recorded_at: datetime = field(default_factory=utc_now)


@dataclass
class FeedbackEntry:
    """
    Durable record linking an executed decision to later ratings/outcomes.

    Attached feedback is appended to the history lists; ``user_feedback``
    and ``outcome`` expose the most recent one.
    """

    timestamp: datetime
    action_taken: ActionDecision
    feedback_history: list[UserFeedback] = field(default_factory=list)
    outcome_history: list[Outcome] = field(default_factory=list)

    @property
    def action(self) -> str:
        return self.action_taken.action

    @property
    def user_feedback(self) -> UserFeedback | None:
        return self.feedback_history[-1] if self.feedback_history else None

    @property
    def outcome(self) -> Outcome | None:
        return self.outcome_history[-1] if self.outcome_history else None

    @property
    def is_success(self) -> bool:
        """Rated 3 or better, or judged effective."""
        feedback = self.user_feedback
        outcome = self.outcome
        return bool((feedback and feedback.rating >= 3) or (outcome and outcome.effective))


@dataclass
class SuccessMetrics:
    total_actions: int = 0
    success_rate: float = 0.0
    average_rating: float = 0.0
    most_successful_actions: list[str] = field(default_factory=list)
    least_successful_actions: list[str] = field(default_factory=list)


@dataclass
class PatternStats:
    total: int = 0
    successful: int = 0

    @property
    def success_rate(self) -> float:
        return self.successful / self.total if self.total else 0.0


@dataclass
class ActionStats:
    ratings: list[int] = field(default_factory=list)
    effectiveness: list[bool] = field(default_factory=list)

    @property
    def average_rating(self) -> float:
        return sum(self.ratings) / len(self.ratings) if self.ratings else 0.0

    @property
    def effectiveness_rate(self) -> float:
        return sum(self.effectiveness) / len(self.effectiveness) if self.effectiveness else 0.0

    @property
    def sample_size(self) -> int:
        return max(len(self.ratings), len(self.effectiveness))


@dataclass
class LearningInsights:
    """Aggregated performance by pattern key and by action."""

    generated_at: datetime
    total_samples: int
    pattern_success: dict[str, PatternStats] = field(default_factory=dict)
    action_performance: dict[str, ActionStats] = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)

    def to_markdown(self) -> str:
        lines = [
            "# Learning Insights",
            "",
            f"*Generated: {self.generated_at.isoformat()}*",
            "",
            f"**Sample Size:** {self.total_samples} actions",
            "",
            "## Pattern Recognition Performance",
            "",
        ]
        if self.pattern_success:
            for key, stats in self.pattern_success.items():
                lines.append(
                    f"- **{key}:** {stats.success_rate:.1%} success rate ({stats.successful}/{stats.total})"
                )
        else:
            lines.append("No pattern data available yet.")
        lines += ["", "## Action Performance Analysis", ""]

        if self.action_performance:
            ranked = sorted(
                self.action_performance.items(),
                key=lambda item: item[1].average_rating,
                reverse=True,
            )
            for action, stats in ranked:
                lines.append(f"### {action}")
                if stats.ratings:
                    lines.append(f"- **Average Rating:** {stats.average_rating:.1f}/5")
                if stats.effectiveness:
                    lines.append(f"- **Effectiveness Rate:** {stats.effectiveness_rate:.1%}")
                lines += [f"- **Sample Size:** {stats.sample_size}", ""]
        else:
            lines += ["No action performance data available yet.", ""]

        lines += ["## Recommendations", ""]
        lines += [f"- {r}" for r in self.recommendations]
        return "\n".join(lines) + "\n"


@dataclass
class LearningData:
    """Pattern keys that worked (rating >= 3) or did not, over the last day."""

    successful_patterns: list[str] = field(default_factory=list)
    failed_patterns: list[str] = field(default_factory=list)
    user_preferences: dict[str, float] = field(default_factory=dict)  # action -> average rating


class FeedbackStore:
    """
    Append-only feedback store.

    In-memory entries drive every metric; the markdown logs under
    ``feedback_dir`` are a human-readable mirror that is never rewritten,
    except for the insights file and daily reports.
    """

    def __init__(self, feedback_dir: Path | str, retention_days: int = 30):
        """
        Initialize the store.

        Args:
            feedback_dir: Directory for the markdown logs (created if missing).
            retention_days: Age after which dated logs and entries are removed.
        """
        self.feedback_dir = ensure_dir(Path(feedback_dir).expanduser())
        self.reports_dir = self.feedback_dir / "reports"
        self.retention_days = retention_days
        self._entries: list[FeedbackEntry] = []

    @classmethod
    def from_config(cls, config: FeedbackConfig) -> "FeedbackStore":
        return cls(config.feedback_path, config.retention_days)

    @property
    def entries(self) -> list[FeedbackEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_action(self, decision: ActionDecision, at: datetime | None = None) -> FeedbackEntry:
        """
        Record an executed decision.

        Args:
            decision: The executed decision.
            at: Time to key the entry on. Defaults to the decision timestamp,
                which is the time callers see in state and results.

        Returns:
            The new entry.
        """
        entry = FeedbackEntry(timestamp=as_utc(at or decision.timestamp), action_taken=decision)
        self._entries.append(entry)

        self._append(self._dated_path("feedback", entry.timestamp), self._format_entry(entry))
        self._append(self._dated_path("actions", entry.timestamp), self._format_action(entry))

        logger.debug("Recorded action {} at {}", decision.action, entry.timestamp.isoformat())
        return entry

    def add_user_feedback(
        self,
        action_timestamp: datetime,
        rating: int,
        comment: str | None = None,
        source: FeedbackSource | str = FeedbackSource.CHAT,
        action: str | None = None,
    ) -> bool:
        """
        Attach a rating to the entry nearest ``action_timestamp``.

        Args:
            action_timestamp: When the rated action happened.
            rating: 1-5.
            comment: Optional free text.
            source: Who gave the feedback.
            action: Restrict matching to entries for this tool.

        Returns:
            True if an entry within 60 seconds was found and updated.

        Raises:
            ValueError: If rating is outside 1..5.
        """
        if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            raise ValueError(f"Rating must be an integer from 1 to 5, got {rating!r}")

        entry = self._find_entry(action_timestamp, action)
        if entry is None:
            logger.warning("No action found near {} for feedback", as_utc(action_timestamp).isoformat())
            return False

        entry.feedback_history.append(
            UserFeedback(rating=rating, comment=comment, source=FeedbackSource(source))
        )
        self._append(self._dated_path("feedback", entry.timestamp), self._format_entry(entry))
        self._append(self._dated_path("user-feedback", entry.timestamp), self._format_user_feedback(entry))

        logger.info("Feedback {}/5 recorded for {}", rating, entry.action)
        return True

    def record_outcome(
        self,
        action_timestamp: datetime,
        effective: bool,
        chat_response: str | None = None,
        side_effects: list[str] | None = None,
        action: str | None = None,
    ) -> bool:
        """
        Attach an outcome to the entry nearest ``action_timestamp``.

        Returns:
            True if an entry within 60 seconds was found and updated.
        """
        entry = self._find_entry(action_timestamp, action)
        if entry is None:
            logger.warning("No action found near {} for outcome", as_utc(action_timestamp).isoformat())
            return False

        entry.outcome_history.append(
            Outcome(effective=effective, chat_response=chat_response, side_effects=list(side_effects or []))
        )
        self._append(self._dated_path("feedback", entry.timestamp), self._format_entry(entry))

        logger.info("Outcome recorded for {} (effective={})", entry.action, effective)
        return True

    def _find_entry(self, at: datetime, action: str | None = None) -> FeedbackEntry | None:
        """Nearest entry within the match window; None when missing or ambiguous."""
        at = as_utc(at)
        best: FeedbackEntry | None = None
        best_distance: timedelta | None = None
        tied = False

        for entry in self._entries:
            if action is not None and entry.action != action:
                continue
            distance = abs(entry.timestamp - at)
            if distance > MATCH_WINDOW:
                continue
            if best_distance is None or distance < best_distance:
                best, best_distance, tied = entry, distance, False
            elif distance == best_distance:
                tied = True

        if tied:
            logger.warning(
                "Ambiguous match near {}: several actions are equally close, pass an action name",
                at.isoformat(),
            )
            return None
        return best

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def recent_entries(self, hours: float = 24, now: datetime | None = None) -> list[FeedbackEntry]:
        cutoff = as_utc(now or utc_now()) - timedelta(hours=hours)
        return [e for e in self._entries if e.timestamp >= cutoff]

    def entries_for_date(self, date: datetime) -> list[FeedbackEntry]:
        day = utc_date_str(date)
        return [e for e in self._entries if utc_date_str(e.timestamp) == day]

    def calculate_success_metrics(self, now: datetime | None = None) -> SuccessMetrics:
        """
        Success metrics over the trailing week.

        success_rate is successes over every entry in the window; actions
        are only ranked once they have at least two feedback samples.
        """
        entries = self.recent_entries(METRICS_WINDOW_HOURS, now)
        if not entries:
            return SuccessMetrics()

        successes = sum(1 for e in entries if e.is_success)
        ratings = [e.user_feedback.rating for e in entries if e.user_feedback]

        per_action: dict[str, PatternStats] = {}
        for entry in entries:
            if entry.user_feedback is None and entry.outcome is None:
                continue
            stats = per_action.setdefault(entry.action, PatternStats())
            stats.total += 1
            if entry.is_success:
                stats.successful += 1

        ranked = sorted(
            (item for item in per_action.items() if item[1].total >= MIN_RANKING_SAMPLES),
            key=lambda item: item[1].success_rate,
            reverse=True,
        )
        names = [action for action, _ in ranked]

        return SuccessMetrics(
            total_actions=len(entries),
            success_rate=successes / max(1, len(entries)),
            average_rating=sum(ratings) / len(ratings) if ratings else 0.0,
            most_successful_actions=names[:3],
            least_successful_actions=names[3:][-3:],
        )

    def generate_learning_insights(self, now: datetime | None = None) -> LearningInsights:
        """Recompute insights over the trailing week and rewrite learning-insights.md."""
        now = as_utc(now or utc_now())
        entries = self.recent_entries(METRICS_WINDOW_HOURS, now)

        pattern_success: dict[str, PatternStats] = {}
        action_performance: dict[str, ActionStats] = {}

        for entry in entries:
            for pattern in entry.action_taken.patterns:
                stats = pattern_success.setdefault(pattern.key, PatternStats())
                stats.total += 1
                if entry.is_success:
                    stats.successful += 1

            perf = action_performance.setdefault(entry.action, ActionStats())
            if entry.user_feedback:
                perf.ratings.append(entry.user_feedback.rating)
            if entry.outcome:
                perf.effectiveness.append(entry.outcome.effective)

        insights = LearningInsights(
            generated_at=now,
            total_samples=len(entries),
            pattern_success=pattern_success,
            action_performance=action_performance,
        )
        insights.recommendations = self._recommend(insights)

        path = self.feedback_dir / "learning-insights.md"
        post = frontmatter.Post(
            insights.to_markdown(),
            generated=now.isoformat(),
            total_samples=insights.total_samples,
        )
        try:
            path.write_text(frontmatter.dumps(post), encoding="utf-8")
        except OSError as e:
            logger.error("Failed to write {}: {}", path, e)

        return insights

    @staticmethod
    def _recommend(insights: LearningInsights) -> list[str]:
        recommendations: list[str] = []

        for action, stats in insights.action_performance.items():
            if stats.sample_size < MIN_ACTION_SAMPLES:
                continue
            if stats.ratings and stats.average_rating < 2.5:
                recommendations.append(
                    f"Consider reducing frequency of **{action}** (low rating: {stats.average_rating:.1f}/5)"
                )
            if stats.effectiveness and stats.effectiveness_rate < 0.3:
                recommendations.append(
                    f"Review parameters for **{action}** (low effectiveness: {stats.effectiveness_rate:.1%})"
                )

        for key, stats in insights.pattern_success.items():
            if stats.total < MIN_PATTERN_SAMPLES:
                continue
            if stats.success_rate < 0.4:
                recommendations.append(
                    f"Pattern **{key}** has low success rate ({stats.success_rate:.1%}) - consider adjusting thresholds"
                )

        if insights.total_samples < MIN_TOTAL_SAMPLES:
            recommendations.append(
                f"Need more data for meaningful insights (current: {insights.total_samples} samples)"
            )

        return recommendations or ["Performance looks good! Keep monitoring for continuous improvement."]

    def learning_data(self, now: datetime | None = None) -> LearningData:
        """Successful and failed pattern keys from rated entries of the last day."""
        successful: list[str] = []
        failed: list[str] = []
        ratings: dict[str, list[int]] = {}

        for entry in self.recent_entries(LEARNING_WINDOW_HOURS, now):
            feedback = entry.user_feedback
            if feedback is None:
                continue
            ratings.setdefault(entry.action, []).append(feedback.rating)
            target = successful if feedback.rating >= 3 else failed
            for pattern in entry.action_taken.patterns:
                if pattern.key not in target:
                    target.append(pattern.key)

        return LearningData(
            successful_patterns=successful,
            failed_patterns=failed,
            user_preferences={action: sum(r) / len(r) for action, r in ratings.items()},
        )

    # ------------------------------------------------------------------
    # Reports and retention
    # ------------------------------------------------------------------

    def generate_daily_report(self, date: datetime | None = None) -> str:
        """
        Build and save the report for one UTC date (defaults to today).

        Returns:
            Report markdown.
        """
        date = as_utc(date or utc_now())
        day = utc_date_str(date)
        entries = self.entries_for_date(date)

        report = self._build_daily_report(entries, day) if entries else self._empty_day_report(day)

        success_rate = sum(1 for e in entries if e.is_success) / len(entries) if entries else 0.0
        post = frontmatter.Post(
            report,
            date=day,
            total_actions=len(entries),
            success_rate=round(success_rate, 3),
        )

        path = ensure_dir(self.reports_dir) / f"daily-{day}.md"
        try:
            path.write_text(frontmatter.dumps(post), encoding="utf-8")
            logger.info("Wrote daily report: {} ({} actions)", path.name, len(entries))
        except OSError as e:
            logger.error("Failed to write daily report {}: {}", path, e)

        return report

    def cleanup(self, now: datetime | None = None) -> int:
        """
        Delete dated logs and in-memory entries older than the retention period.

        Returns:
            Number of files removed.
        """
        now = as_utc(now or utc_now())
        cutoff = now - timedelta(days=self.retention_days)
        cutoff_day = cutoff.strftime("%Y-%m-%d")

        removed = 0
        for directory in (self.feedback_dir, self.reports_dir):
            if not directory.exists():
                continue
            for path in directory.iterdir():
                match = _DATED_FILE.match(path.name)
                if not match or not path.is_file():
                    continue
                # ISO dates compare correctly as strings
                if match.group("date") < cutoff_day:
                    try:
                        path.unlink()
                        removed += 1
                    except OSError as e:
                        logger.error("Failed to remove {}: {}", path, e)

        before = len(self._entries)
        self._entries = [e for e in self._entries if e.timestamp >= cutoff]
        pruned = before - len(self._entries)

        if removed or pruned:
            logger.info("Retention sweep removed {} file(s) and {} entr(ies)", removed, pruned)
        return removed

    # ------------------------------------------------------------------
    # Markdown log writers
    # ------------------------------------------------------------------

    def _dated_path(self, prefix: str, when: datetime) -> Path:
        return self.feedback_dir / f"{prefix}-{utc_date_str(when)}.md"

    @staticmethod
    def _append(path: Path, text: str) -> None:
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            logger.error("Failed to append to {}: {}", path.name, e)

    @staticmethod
    def _time_str(when: datetime) -> str:
        return as_utc(when).strftime("%H:%M:%S")

    @staticmethod
    def _json(value: Any) -> str:
        return json.dumps(value, ensure_ascii=False, default=str)

    def _format_action(self, entry: FeedbackEntry) -> str:
        decision = entry.action_taken
        patterns = ", ".join(p.describe() for p in decision.patterns) or "none"
        return (
            f"### {self._time_str(entry.timestamp)} - {decision.action}\n\n"
            f"**Reason:** {decision.reason}\n\n"
            f"**Confidence:** {decision.confidence}\n\n"
            f"**Parameters:** `{self._json(decision.parameters)}`\n\n"
            f"**Patterns:** {patterns}\n\n"
        )

    def _format_entry(self, entry: FeedbackEntry) -> str:
        decision = entry.action_taken
        lines = [
            f"## Action Taken: {decision.action}",
            "",
            f"**Timestamp:** {as_utc(entry.timestamp).strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            f"**Reason:** {decision.reason}",
            "",
            f"**Confidence:** {decision.confidence}",
            "",
            "**Parameters:**",
            "```json",
            json.dumps(decision.parameters, indent=2, ensure_ascii=False, default=str),
            "```",
            "",
        ]

        if decision.patterns:
            lines.append("**Patterns Detected:**")
            for pattern in decision.patterns:
                lines.append(
                    f"- **{pattern.type.value}** (Severity: {pattern.severity:g}/10, "
                    f"Confidence: {pattern.confidence})"
                )
                lines.append(f"  - Users: {', '.join(pattern.users)}")
                lines.append(f"  - Messages: {' | '.join(pattern.messages)}")
                if pattern.metadata.get("reason"):
                    lines.append(f"  - AI Analysis: {pattern.metadata['reason']}")
            lines.append("")

        feedback = entry.user_feedback
        if feedback:
            lines += ["**User Feedback:**", f"- Rating: {feedback.rating}/5", f"- Source: {feedback.source.value}"]
            if feedback.comment:
                lines.append(f'- Comment: "{feedback.comment}"')
            lines.append("")

        outcome = entry.outcome
        if outcome:
            lines += ["**Outcome:**", f"- Effective: {'yes' if outcome.effective else 'no'}"]
            if outcome.chat_response:
                lines.append(f'- Chat Response: "{outcome.chat_response}"')
            if outcome.side_effects:
                lines.append(f"- Side Effects: {', '.join(outcome.side_effects)}")
            lines.append("")

        return "\n".join(lines) + "\n---\n\n"

    def _format_user_feedback(self, entry: FeedbackEntry) -> str:
        feedback = entry.user_feedback
        text = (
            f"### {self._time_str(entry.timestamp)} - Feedback on {entry.action}\n\n"
            f"**Rating:** {feedback.rating}/5\n\n"
            f"**Source:** {feedback.source.value}\n\n"
        )
        if feedback.comment:
            text += f"**Comment:** {feedback.comment}\n\n"
        return text + f"**Original Action:** {entry.action_taken.reason}\n\n"

    def _build_daily_report(self, entries: list[FeedbackEntry], day: str) -> str:
        rated = [e for e in entries if e.user_feedback]
        average_rating = sum(e.user_feedback.rating for e in rated) / len(rated) if rated else 0.0
        success_rate = sum(1 for e in entries if e.is_success) / len(entries)

        counts: dict[str, int] = {}
        for entry in entries:
            counts[entry.action] = counts.get(entry.action, 0) + 1

        lines = [
            f"# Daily Autonomous Agent Report - {day}",
            "",
            "## Summary",
            "",
            f"- **Total Actions:** {len(entries)}",
            f"- **Actions with Feedback:** {len(rated)}",
            f"- **Average Rating:** {average_rating:.1f}/5",
            f"- **Success Rate:** {success_rate:.1%}",
            "",
            "## Action Breakdown",
            "",
        ]
        for action, count in sorted(counts.items(), key=lambda item: item[1], reverse=True):
            lines.append(f"- **{action}:** {count} times")
        lines.append("")

        if rated:
            best = max(rated, key=lambda e: e.user_feedback.rating)
            worst = min(rated, key=lambda e: e.user_feedback.rating)
            lines += ["## Feedback Highlights", ""]
            lines += self._highlight("Best Rated Action", best)
            if worst.user_feedback.rating != best.user_feedback.rating:
                lines += self._highlight("Lowest Rated Action", worst)

        lines += ["## Detailed Actions", ""]
        for entry in entries[-10:]:
            lines.append(f"### {self._time_str(entry.timestamp)} - {entry.action}")
            lines.append(f"- **Reason:** {entry.action_taken.reason}")
            lines.append(f"- **Confidence:** {entry.action_taken.confidence}")
            if entry.user_feedback:
                lines.append(f"- **Rating:** {entry.user_feedback.rating}/5")
            if entry.outcome:
                lines.append(f"- **Effective:** {'yes' if entry.outcome.effective else 'no'}")
            lines.append("")

        return "\n".join(lines)

    @staticmethod
    def _highlight(title: str, entry: FeedbackEntry) -> list[str]:
        lines = [
            f"### {title} ({entry.user_feedback.rating}/5)",
            f"- **Action:** {entry.action}",
            f"- **Reason:** {entry.action_taken.reason}",
        ]
        if entry.user_feedback.comment:
            lines.append(f'- **Comment:** "{entry.user_feedback.comment}"')
        return lines + [""]

    @staticmethod
    def _empty_day_report(day: str) -> str:
        return (
            f"# Daily Autonomous Agent Report - {day}\n\n"
            "## Summary\n\n"
            "No autonomous actions were taken on this day.\n\n"
            "The agent was either:\n"
            "- Disabled\n"
            "- Not seeing patterns that required action\n"
            "- Waiting on tool cooldowns\n"
        )
