"""Agent core module."""

from chatpilot.agent.decisions import ActionDecision, CooldownLedger, DecisionEngine
from chatpilot.agent.feedback import FeedbackEntry, FeedbackSource, FeedbackStore
from chatpilot.agent.monitor import AutonomousMonitor, AutonomousState, ForcedAnalysis
from chatpilot.agent.patterns import AnalysisResult, Pattern, PatternAnalyzer, PatternType

__all__ = [
    "ActionDecision",
    "AnalysisResult",
    "AutonomousMonitor",
    "AutonomousState",
    "CooldownLedger",
    "DecisionEngine",
    "FeedbackEntry",
    "FeedbackSource",
    "FeedbackStore",
    "ForcedAnalysis",
    "Pattern",
    "PatternAnalyzer",
    "PatternType",
]
