"""
Autonomous chat monitor.

Runs the pipeline on a timer:

    message window -> pattern analysis -> significance filter
        -> decision engine -> sequential execution -> feedback store

Lifecycle mirrors the other background services: ``start()`` spawns the
periodic task (plus a daily maintenance task aligned to local midnight)
and is idempotent; ``stop()`` cancels both. A cycle already in flight is
shielded from cancellation and runs to completion, so decisions it has
issued are still executed and recorded.

The monitor owns all mutable state (cooldown ledger, recent actions,
statistics). Periodic and forced cycles are serialized by one lock.
"""

from __future__ import annotations

import asyncio
import copy
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from loguru import logger

from chatpilot.agent.decisions import ActionDecision, CooldownLedger, DecisionEngine
from chatpilot.agent.feedback import FeedbackSource, FeedbackStore, LearningData
from chatpilot.agent.patterns import AnalysisResult, Pattern, PatternAnalyzer
from chatpilot.bus.events import ChatMessage
from chatpilot.bus.window import MessageWindow
from chatpilot.config.schema import AutonomousConfig, Config
from chatpilot.providers.base import ActionExecutor, Oracle
from chatpilot.utils.helpers import utc_now

RECENT_ACTIONS_CAP = 50

# Significance filter applied to periodic cycles
SIGNIFICANT_CONFIDENCE = 0.6
SIGNIFICANT_SEVERITY = 5


@dataclass
class Statistics:
    actions_today: int = 0
    success_rate: float = 0.0
    average_confidence: float = 0.0
    most_common_action: str | None = None


@dataclass
class AutonomousState:
    is_active: bool = False
    last_analysis: datetime | None = None
    recent_actions: list[ActionDecision] = field(default_factory=list)
    learning_data: LearningData = field(default_factory=LearningData)
    statistics: Statistics = field(default_factory=Statistics)


@dataclass
class ForcedAnalysis:
    """Result of an on-demand cycle."""

    analysis: AnalysisResult = field(default_factory=AnalysisResult)
    decisions: list[ActionDecision] = field(default_factory=list)
    executed: list[ActionDecision] = field(default_factory=list)

    @property
    def patterns(self) -> list[Pattern]:
        return self.analysis.patterns


def is_significant(pattern: Pattern, analysis: AnalysisResult) -> bool:
    """Confident enough, and either severe or part of a batch needing attention."""
    return pattern.confidence >= SIGNIFICANT_CONFIDENCE and (
        pattern.severity >= SIGNIFICANT_SEVERITY or analysis.needs_attention
    )


class AutonomousMonitor:
    """
    Periodic chat monitor that acts through an injected executor.

    Args:
        oracle: Language-model oracle shared by analyzer and engine.
        executor: Performs the decided actions.
        config: Autonomous configuration section.
        feedback: Store receiving every successfully executed action.
        window: Message window (a fresh 100-message window by default).
    """

    def __init__(
        self,
        oracle: Oracle,
        executor: ActionExecutor,
        config: AutonomousConfig,
        feedback: FeedbackStore,
        window: MessageWindow | None = None,
    ):
        self.config = config
        self.executor = executor
        self.feedback = feedback
        self.window = window if window is not None else MessageWindow()

        self.ledger = CooldownLedger()
        self.analyzer = PatternAnalyzer(oracle, spam_threshold=config.rules.spam_detection.threshold)
        self.engine = DecisionEngine(oracle, config, self.ledger)

        self._state = AutonomousState()
        self._lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task | None = None
        self._maintenance_task: asyncio.Task | None = None
        self._cycle_task: asyncio.Future | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        executor: ActionExecutor,
        oracle: Oracle | None = None,
    ) -> "AutonomousMonitor":
        """Build a monitor from the root config; defaults to a LiteLLM oracle."""
        if oracle is None:
            from chatpilot.providers.litellm_provider import LiteLLMOracle

            oracle = LiteLLMOracle.from_config(config.oracle)
        return cls(
            oracle=oracle,
            executor=executor,
            config=config.autonomous,
            feedback=FeedbackStore.from_config(config.feedback),
        )

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start periodic monitoring (no-op if running or disabled)."""
        if self._running:
            logger.debug("Autonomous monitor already running")
            return
        if not self.config.enabled:
            logger.info("Autonomous monitoring is disabled in config")
            return

        self._running = True
        self._state.is_active = True
        self._task = asyncio.create_task(self._run_loop(), name="autonomous-monitor")
        self._maintenance_task = asyncio.create_task(self._maintenance_loop(), name="autonomous-maintenance")
        logger.info("Autonomous monitor started (every {}s)", self.config.monitoring_interval_s)

    def stop(self) -> None:
        """Stop monitoring; an in-flight cycle still finishes."""
        if not self._running:
            return

        self._running = False
        self._state.is_active = False
        for task in (self._task, self._maintenance_task):
            if task is not None:
                task.cancel()
        self._task = None
        self._maintenance_task = None

        try:
            self.feedback.generate_daily_report()
        except Exception as e:
            logger.warning("Final daily report failed: {}", e)

        logger.info("Autonomous monitor stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.monitoring_interval_s)
            if not self._running:
                break
            # Shielded: cancelling the loop must not abort a cycle mid-execution
            self._cycle_task = asyncio.ensure_future(self._tick())
            await asyncio.shield(self._cycle_task)

    async def _maintenance_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._seconds_until_midnight())
            if not self._running:
                break
            try:
                await self.perform_daily_maintenance()
            except Exception as e:
                logger.error("Error during daily maintenance: {}", e)

    @staticmethod
    def _seconds_until_midnight(now: datetime | None = None) -> float:
        """Seconds until the next local midnight."""
        now = now or datetime.now()
        midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return max(1.0, (midnight - now).total_seconds())

    # ------------------------------------------------------------------
    # Chat input
    # ------------------------------------------------------------------

    def ingest(self, message: ChatMessage) -> None:
        self.window.ingest(message)

    def add_chat_messages(self, messages: Iterable[ChatMessage | Mapping[str, Any]]) -> None:
        """Append a batch; mappings are converted with ChatMessage.from_dict."""
        self.window.extend(
            m if isinstance(m, ChatMessage) else ChatMessage.from_dict(dict(m)) for m in messages
        )

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def _tick(self) -> None:
        """One periodic cycle; failures are logged and never end the loop."""
        async with self._lock:
            try:
                await self._cycle()
            except Exception as e:
                logger.error("Error in autonomous monitoring cycle: {}", e)

    async def _cycle(self) -> None:
        if not self._state.is_active:
            logger.debug("Monitor inactive, skipping cycle")
            return
        messages = self.window.messages()
        if not messages:
            logger.debug("No chat messages, skipping cycle")
            return

        analysis = await self.analyzer.analyze(messages, self.window.user_rates())
        self._state.last_analysis = utc_now()

        significant = [p for p in analysis.patterns if is_significant(p, analysis)]
        if not significant:
            logger.debug("No significant patterns in {} messages", len(messages))
            return

        logger.info("Detected {} significant pattern(s)", len(significant))
        decisions = await self.engine.decide(analysis.with_patterns(significant))
        if not decisions:
            return

        executed = await self._execute_decisions(decisions)
        if executed:
            logger.info("Executed {}/{} planned action(s)", len(executed), len(decisions))

    async def force_analysis(self) -> ForcedAnalysis:
        """
        Run one full cycle now, without the significance filter.

        Returns an empty result when monitoring is disabled in config. Runs
        even if the monitor is not started.
        """
        if not self.config.enabled:
            return ForcedAnalysis()

        async with self._lock:
            logger.info("Forcing immediate chat analysis")
            messages = self.window.messages()
            analysis = await self.analyzer.analyze(messages, self.window.user_rates())
            self._state.last_analysis = utc_now()
            logger.info(
                "Analysis complete: {} pattern(s), needs attention: {}",
                len(analysis.patterns),
                analysis.needs_attention,
            )

            decisions = await self.engine.decide(analysis)
            executed = await self._execute_decisions(decisions)
            return ForcedAnalysis(analysis=analysis, decisions=decisions, executed=executed)

    async def _execute_decisions(self, decisions: list[ActionDecision]) -> list[ActionDecision]:
        """Execute sequentially; only successful executions are recorded."""
        executed: list[ActionDecision] = []

        for i, decision in enumerate(decisions):
            if i and self.config.action_pause_s > 0:
                await asyncio.sleep(self.config.action_pause_s)

            logger.info("Executing {} (confidence {:.2f})", decision.action, decision.confidence)
            try:
                result = await self.executor.execute(decision.action, dict(decision.parameters))
            except Exception as e:
                logger.error("Error executing {}: {}", decision.action, e)
                continue

            if not result.success:
                logger.error("Failed to execute {}: {}", decision.action, result.error)
                continue

            self.feedback.record_action(decision)
            executed.append(decision)
            logger.info("Executed {}: {}", decision.action, decision.reason)

        if executed:
            self._state.recent_actions = (self._state.recent_actions + executed)[-RECENT_ACTIONS_CAP:]
            self._update_statistics(executed)
        return executed

    def _update_statistics(self, executed: list[ActionDecision]) -> None:
        stats = self._state.statistics
        stats.actions_today += len(executed)
        stats.average_confidence = sum(d.confidence for d in executed) / len(executed)
        counts = Counter(d.action for d in self._state.recent_actions)
        if counts:
            stats.most_common_action = counts.most_common(1)[0][0]

    # ------------------------------------------------------------------
    # State, feedback and reports
    # ------------------------------------------------------------------

    def get_state(self) -> AutonomousState:
        """Snapshot of the state with success rate and learning data recomputed."""
        self._state.statistics.success_rate = self.feedback.calculate_success_metrics().success_rate
        self._state.learning_data = self.feedback.learning_data()
        return copy.deepcopy(self._state)

    def add_user_feedback(
        self,
        action_timestamp: datetime,
        rating: int,
        comment: str | None = None,
        source: FeedbackSource | str = FeedbackSource.CHAT,
        action: str | None = None,
    ) -> bool:
        return self.feedback.add_user_feedback(action_timestamp, rating, comment, source, action)

    def record_action_outcome(
        self,
        action_timestamp: datetime,
        effective: bool,
        chat_response: str | None = None,
        side_effects: list[str] | None = None,
        action: str | None = None,
    ) -> bool:
        return self.feedback.record_outcome(action_timestamp, effective, chat_response, side_effects, action)

    def generate_performance_report(self) -> str:
        """Markdown report: status, weekly metrics, cooldowns and learning insights."""
        metrics = self.feedback.calculate_success_metrics()
        insights = self.feedback.generate_learning_insights()
        last = self._state.last_analysis.isoformat() if self._state.last_analysis else "never"

        lines = [
            "# Autonomous Agent Performance Report",
            "",
            f"*Generated: {utc_now().isoformat()}*",
            "",
            "## Current Status",
            "",
            f"- **Active:** {'yes' if self._state.is_active else 'no'}",
            f"- **Last Analysis:** {last}",
            f"- **Recent Actions:** {len(self._state.recent_actions)}",
            "",
            "## Performance Metrics",
            "",
            f"- **Total Actions:** {metrics.total_actions}",
            f"- **Success Rate:** {metrics.success_rate:.1%}",
            f"- **Average Rating:** {metrics.average_rating:.1f}/5",
            "",
        ]
        if metrics.most_successful_actions:
            lines += ["### Most Successful Actions"] + [f"- {a}" for a in metrics.most_successful_actions] + [""]
        if metrics.least_successful_actions:
            lines += ["### Least Successful Actions"] + [f"- {a}" for a in metrics.least_successful_actions] + [""]

        lines += ["## Tool Cooldown Status", ""]
        for tool, remaining in self.engine.cooldown_status().items():
            lines.append(f"- **{tool}:** {f'{remaining}s remaining' if remaining > 0 else 'Ready'}")
        lines.append("")

        return "\n".join(lines) + "\n" + insights.to_markdown()

    async def perform_daily_maintenance(self) -> None:
        """Daily report, insights refresh, retention sweep, and counter reset."""
        async with self._lock:
            logger.info("Performing daily maintenance")
            self.feedback.generate_daily_report()
            self.feedback.generate_learning_insights()
            self.feedback.cleanup()
            self._state.statistics.actions_today = 0

    def update_config(self, config: AutonomousConfig) -> None:
        """Apply a new configuration; disabling a running monitor stops it."""
        self.config = config
        self.engine.update_config(config)
        self.analyzer.spam_threshold = config.rules.spam_detection.threshold
        if self._running and not config.enabled:
            self.stop()
        logger.info("Autonomous config updated (enabled={})", config.enabled)

    def get_debug_info(self) -> dict[str, Any]:
        return {
            "is_running": self._running,
            "state": self.get_state(),
            "recent_messages_count": self.window.size(),
            "config": self.config.model_dump(by_alias=True),
            "cooldown_status": self.engine.cooldown_status(),
            "pattern_trends": self.analyzer.pattern_trends(),
        }
