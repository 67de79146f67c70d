"""Tests for configuration schema and loading."""

import json
from pathlib import Path

from chatpilot.config import AutonomousConfig, Config, load_config, save_config


class TestSchema:
    """Tests for config defaults and key styles."""

    def test_defaults(self):
        config = Config()
        rules = config.autonomous.rules

        assert config.autonomous.enabled is False
        assert config.autonomous.monitoring_interval_s == 30.0
        assert config.autonomous.action_pause_s == 1.0
        assert rules.spam_detection.threshold == 10
        assert rules.toxicity_detection.severity_threshold == 6
        assert rules.poll_automation.enabled is False
        assert rules.poll_automation.cooldown == 15
        assert config.feedback.retention_days == 30

    def test_camel_and_snake_case_keys(self):
        camel = AutonomousConfig.model_validate({"monitoringIntervalS": 10, "rules": {"spamDetection": {"threshold": 4}}})
        snake = AutonomousConfig.model_validate({"monitoring_interval_s": 10, "rules": {"spam_detection": {"threshold": 4}}})

        assert camel == snake
        assert camel.rules.spam_detection.threshold == 4

    def test_feedback_path_expands_user(self):
        config = Config()
        assert "~" not in str(config.feedback.feedback_path)

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CHATPILOT_ORACLE__MODEL", "openai/gpt-4o-mini")
        assert Config().oracle.model == "openai/gpt-4o-mini"


class TestLoader:
    """Tests for reading and writing config files."""

    def test_missing_file_gives_defaults(self, tmp_path: Path):
        config = load_config(tmp_path / "missing.json")
        assert config == Config()

    def test_round_trip(self, tmp_path: Path):
        config = Config()
        config.autonomous.enabled = True
        config.autonomous.rules.toxicity_detection.action = "ban"

        path = save_config(config, tmp_path / "config.json")
        saved = json.loads(path.read_text(encoding="utf-8"))
        loaded = load_config(path)

        assert saved["autonomous"]["rules"]["toxicityDetection"]["action"] == "ban"
        assert loaded.autonomous.enabled is True
        assert loaded.autonomous.rules.toxicity_detection.action == "ban"

    def test_invalid_json_falls_back(self, tmp_path: Path):
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")

        assert load_config(path).autonomous.enabled is False

    def test_invalid_values_fall_back(self, tmp_path: Path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"autonomous": {"rules": {"spamDetection": {"action": "explode"}}}}), encoding="utf-8")

        config = load_config(path)

        assert config.autonomous.rules.spam_detection.action == "timeout"
