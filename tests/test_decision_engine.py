"""Tests for DecisionEngine and CooldownLedger."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatpilot.agent.decisions import ActionDecision, CooldownLedger, DecisionEngine
from chatpilot.agent.patterns import AnalysisResult, Pattern, PatternType
from chatpilot.agent.tools import TOOLS
from chatpilot.config.schema import AutonomousConfig
from chatpilot.providers.base import Oracle, OracleError

T0 = datetime(2025, 3, 1, 20, 0, 0, tzinfo=timezone.utc)


def _config(**overrides) -> AutonomousConfig:
    data = {"enabled": True}
    data.update(overrides)
    return AutonomousConfig.model_validate(data)


def _oracle(*responses) -> MagicMock:
    oracle = MagicMock(spec=Oracle)
    oracle.analyze = AsyncMock(side_effect=list(responses))
    return oracle


def _analysis(*patterns: Pattern, needs_attention: bool = True) -> AnalysisResult:
    return AnalysisResult(
        patterns=list(patterns),
        overall_sentiment=-0.4,
        activity_level=6,
        needs_attention=needs_attention,
        recommendations=["timeout troll"],
    )


def _toxicity(severity: float = 8, confidence: float = 0.8, user: str = "u1") -> Pattern:
    return Pattern(
        type=PatternType.TOXICITY,
        severity=severity,
        confidence=confidence,
        users=[user],
        messages=["you are trash"],
        metadata={"reason": "insult", "ai_generated": True},
    )


def _spam(severity: float = 7, confidence: float = 0.8) -> Pattern:
    return Pattern(type=PatternType.SPAM, severity=severity, confidence=confidence, users=["bot42"],
                   messages=["free followers at spam.example"])


def _question() -> Pattern:
    return Pattern(type=PatternType.QUESTION, severity=7, confidence=0.7, users=["bob"],
                   messages=["what game is next?"], metadata={"suggested_response": "Chess!"})


class TestCooldownLedger:
    """Tests for per-tool cooldown tracking."""

    def test_unused_tool_is_ready(self):
        ledger = CooldownLedger()
        assert ledger.remaining("banUser", 5, T0) == timedelta(0)
        assert ledger.last_used("banUser") is None

    def test_remaining_time(self):
        ledger = CooldownLedger()
        ledger.mark("banUser", T0)
        assert ledger.remaining("banUser", 5, T0 + timedelta(minutes=2)) == timedelta(minutes=3)
        assert ledger.is_cooling("banUser", 5, T0 + timedelta(minutes=4))
        assert not ledger.is_cooling("banUser", 5, T0 + timedelta(minutes=5))

    def test_no_cooldown_never_cools(self):
        ledger = CooldownLedger()
        ledger.mark("sendMessageToChat", T0)
        assert not ledger.is_cooling("sendMessageToChat", None, T0)


class TestAvailableTools:
    """Tests for candidate tool selection."""

    def test_five_minute_cooldown_excluded_then_included(self):
        """Test that banUser is excluded at t0+4min and included at t0+6min."""
        engine = DecisionEngine(_oracle(), _config())
        engine.ledger.mark("banUser", T0)

        names_at_4 = [t.name for t in engine.available_tools(T0 + timedelta(minutes=4))]
        names_at_6 = [t.name for t in engine.available_tools(T0 + timedelta(minutes=6))]

        assert "banUser" not in names_at_4
        assert "banUser" in names_at_6

    def test_high_risk_tools_need_global_enable(self):
        engine = DecisionEngine(_oracle(), _config(enabled=False))
        names = [t.name for t in engine.available_tools(T0)]
        assert "timeoutUser" not in names
        assert "banUser" not in names
        assert "sendMessageToChat" in names

    def test_config_gates(self):
        config = _config(rules={
            "spamDetection": {"enabled": False},
            "toxicityDetection": {"enabled": False},
            "chatEngagement": {"enabled": False},
            "pollAutomation": {"enabled": False},
        })
        names = [t.name for t in DecisionEngine(_oracle(), config).available_tools(T0)]

        for gated in ("timeoutUser", "banUser", "sendMessageToChat", "createTwitchPoll"):
            assert gated not in names
        assert "createTwitchClip" in names

    def test_poll_cooldown_follows_config(self):
        config = _config(rules={"pollAutomation": {"enabled": True, "cooldown": 2}})
        engine = DecisionEngine(_oracle(), config)
        engine.ledger.mark("createTwitchPoll", T0)

        assert "createTwitchPoll" not in [t.name for t in engine.available_tools(T0 + timedelta(minutes=1))]
        assert "createTwitchPoll" in [t.name for t in engine.available_tools(T0 + timedelta(minutes=3))]

    def test_cooldown_status(self):
        engine = DecisionEngine(_oracle(), _config())
        engine.ledger.mark("banUser", T0)

        status = engine.cooldown_status(T0 + timedelta(minutes=1))

        assert status["banUser"] == 240
        assert status["timeoutUser"] == 0
        assert set(status) == {t.name for t in TOOLS}


class TestDecide:
    """Tests for oracle-driven decisions."""

    @pytest.mark.asyncio
    async def test_no_candidates_no_oracle_call(self):
        config = _config(enabled=False, rules={"chatEngagement": {"enabled": False}})
        oracle = _oracle()
        engine = DecisionEngine(oracle, config)
        for tool in TOOLS:
            engine.ledger.mark(tool.name, T0)

        decisions = await engine.decide(_analysis(_toxicity()), now=T0 + timedelta(minutes=1))

        assert decisions == []
        oracle.analyze.assert_not_called()

    @pytest.mark.asyncio
    async def test_grounded_proposal(self):
        oracle = _oracle(json.dumps([{
            "action": "timeoutUser",
            "parameters": {"usernameOrDescriptor": "u1", "reason": "insults", "duration": 600},
            "reason": "Toxic insult toward another viewer",
            "targetPattern": "toxicity",
        }]))
        engine = DecisionEngine(oracle, _config())
        pattern = _toxicity()

        decisions = await engine.decide(_analysis(pattern), now=T0)

        assert len(decisions) == 1
        decision = decisions[0]
        assert decision.action == "timeoutUser"
        assert decision.parameters["duration"] == 600
        assert decision.confidence == 0.7  # default when omitted
        assert decision.patterns == (pattern,)
        assert decision.timestamp == T0
        assert engine.ledger.last_used("timeoutUser") == T0

    @pytest.mark.asyncio
    async def test_confidence_clamped(self):
        oracle = _oracle(json.dumps([
            {"action": "createTwitchClip", "reason": "Hype moment", "confidence": 1.7},
        ]))
        decisions = await DecisionEngine(oracle, _config()).decide(_analysis(), now=T0)
        assert decisions[0].confidence == 1.0

    @pytest.mark.asyncio
    async def test_unknown_and_ungrounded_proposals_discarded(self):
        oracle = _oracle(json.dumps([
            {"action": "deleteChannel", "reason": "why not"},
            {"action": "banUser", "parameters": {"usernameOrDescriptor": "x"}, "reason": "spam wave",
             "targetPattern": "spam"},
        ]))
        engine = DecisionEngine(oracle, _config())

        decisions = await engine.decide(_analysis(_toxicity()), now=T0)

        assert decisions == []
        assert engine.ledger.last_used("banUser") is None

    @pytest.mark.asyncio
    async def test_tool_accepted_once_per_call(self):
        proposal = {"action": "timeoutUser", "parameters": {"usernameOrDescriptor": "u1"},
                    "reason": "toxic", "targetPattern": "toxicity"}
        engine = DecisionEngine(_oracle(json.dumps([proposal, proposal])), _config())

        decisions = await engine.decide(_analysis(_toxicity()), now=T0)

        assert [d.action for d in decisions] == ["timeoutUser"]

    @pytest.mark.asyncio
    async def test_proposal_for_cooling_tool_discarded(self):
        oracle = _oracle(json.dumps([
            {"action": "banUser", "parameters": {"usernameOrDescriptor": "u1"}, "reason": "threats"},
        ]))
        engine = DecisionEngine(oracle, _config())
        engine.ledger.mark("banUser", T0)

        decisions = await engine.decide(_analysis(_toxicity()), now=T0 + timedelta(minutes=1))

        assert decisions == []

    @pytest.mark.asyncio
    async def test_missing_required_parameters_filled(self):
        oracle = _oracle(json.dumps([
            {"action": "timeoutUser", "reason": "Toxic insult", "targetPattern": "toxicity"},
        ]))
        engine = DecisionEngine(oracle, _config())

        decisions = await engine.decide(_analysis(_toxicity(user="troll")), now=T0)

        assert decisions[0].parameters == {"usernameOrDescriptor": "troll"}

    @pytest.mark.asyncio
    async def test_unfillable_proposal_dropped(self):
        oracle = _oracle(json.dumps([{"action": "updateStreamCategory", "reason": "Switch games"}]))
        decisions = await DecisionEngine(oracle, _config()).decide(_analysis(), now=T0)
        assert decisions == []

    @pytest.mark.asyncio
    async def test_parameters_synthesized_for_messages(self):
        oracle = _oracle(
            json.dumps([{"action": "sendMessageToChat", "reason": "Answer bob", "targetPattern": "question"}]),
            '{"message": "@bob chess is next!"}',
        )
        engine = DecisionEngine(oracle, _config())

        decisions = await engine.decide(_analysis(_question()), now=T0)

        assert decisions[0].parameters == {"message": "@bob chess is next!"}
        assert oracle.analyze.await_count == 2
        synthesis_prompt = oracle.analyze.await_args_list[1].args[0]
        assert 'tool "sendMessageToChat"' in synthesis_prompt
        assert "Overall chat sentiment: negative" in synthesis_prompt

    @pytest.mark.asyncio
    async def test_parameter_synthesis_failure_uses_canned_values(self):
        oracle = _oracle(
            json.dumps([{"action": "sendMessageToChat", "reason": "Answer bob", "targetPattern": "question"}]),
            OracleError("rate limited"),
        )
        decisions = await DecisionEngine(oracle, _config()).decide(_analysis(_question()), now=T0)

        assert decisions[0].parameters == {"message": "Thanks for the question! Let me think about that..."}

    @pytest.mark.asyncio
    async def test_poll_proposed_at_most_once_across_two_cycles(self):
        """Test that two cycles within the poll cooldown yield one poll decision."""
        proposal = json.dumps([{
            "action": "createTwitchPoll",
            "parameters": {"title": "Next game?", "choices": "Chess, Go", "duration": 120},
            "reason": "Viewers asked for a vote",
        }])
        oracle = MagicMock(spec=Oracle)
        oracle.analyze = AsyncMock(return_value=proposal)
        engine = DecisionEngine(oracle, _config(rules={"pollAutomation": {"enabled": True}}))

        first = await engine.decide(_analysis(_question()), now=T0)
        second = await engine.decide(_analysis(_question()), now=T0 + timedelta(minutes=10))

        polls = [d for d in first + second if d.action == "createTwitchPoll"]
        assert len(polls) == 1


class TestFallback:
    """Tests for rule-based decisions when the oracle fails."""

    @pytest.mark.asyncio
    async def test_toxicity_fallback_uses_configured_action(self):
        oracle = _oracle(OracleError("provider down"))
        engine = DecisionEngine(oracle, _config())

        decisions = await engine.decide(_analysis(_toxicity(severity=8, confidence=0.8)), now=T0)

        assert len(decisions) == 1
        decision = decisions[0]
        assert decision.action == "timeoutUser"
        assert decision.confidence == 0.6
        assert decision.reason == "Fallback action for high toxicity (8/10)"
        assert decision.parameters["usernameOrDescriptor"] == "u1"
        assert decision.parameters["reason"] == "Toxic behavior detected"
        assert engine.ledger.last_used("timeoutUser") == T0

    @pytest.mark.asyncio
    async def test_toxicity_fallback_ban(self):
        config = _config(rules={"toxicityDetection": {"action": "ban"}})
        engine = DecisionEngine(_oracle(OracleError("down")), config)

        decisions = await engine.decide(_analysis(_toxicity()), now=T0)

        assert [d.action for d in decisions] == ["banUser"]

    @pytest.mark.asyncio
    async def test_unparseable_output_triggers_fallback(self):
        engine = DecisionEngine(_oracle("I think you should ban them"), _config())

        decisions = await engine.decide(_analysis(_spam(severity=6)), now=T0)

        assert len(decisions) == 1
        assert decisions[0].action == "timeoutUser"
        assert decisions[0].parameters["reason"] == "Spam detected"
        assert decisions[0].parameters["duration"] == 60

    @pytest.mark.parametrize("pattern", [
        _toxicity(severity=6.9),
        _toxicity(confidence=0.69),
        _spam(severity=5.5),
        _question(),
    ])
    def test_below_thresholds_no_decision(self, pattern):
        oracle = _oracle()
        engine = DecisionEngine(oracle, _config())

        assert engine.fallback_decisions(_analysis(pattern), now=T0) == []
        oracle.analyze.assert_not_called()

    def test_fallback_respects_cooldown(self):
        engine = DecisionEngine(_oracle(), _config())
        engine.ledger.mark("timeoutUser", T0)

        decisions = engine.fallback_decisions(_analysis(_toxicity(), _spam()), now=T0 + timedelta(seconds=30))

        assert decisions == []

    def test_fallback_once_per_tool(self):
        engine = DecisionEngine(_oracle(), _config())

        decisions = engine.fallback_decisions(_analysis(_toxicity(), _spam()), now=T0)

        assert [d.action for d in decisions] == ["timeoutUser"]

    def test_fallback_disabled_rule(self):
        engine = DecisionEngine(_oracle(), _config(rules={"toxicityDetection": {"enabled": False}}))
        assert engine.fallback_decisions(_analysis(_toxicity()), now=T0) == []


class TestActionDecision:
    """Tests for the decision record."""

    def test_immutable(self):
        decision = ActionDecision(action="createTwitchClip", parameters={}, reason="hype", confidence=0.8)
        with pytest.raises(AttributeError):
            decision.action = "banUser"  # type: ignore[misc]

    def test_to_dict(self):
        pattern = _toxicity()
        decision = ActionDecision(action="timeoutUser", parameters={"usernameOrDescriptor": "u1"},
                                  reason="toxic", confidence=0.9, patterns=(pattern,), timestamp=T0)
        data = decision.to_dict()
        assert data["timestamp"] == T0.isoformat()
        assert data["patterns"][0]["type"] == "toxicity"
