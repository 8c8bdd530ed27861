"""Tests for environment-driven settings"""

from colloquy.config.settings import Settings
from colloquy.engine.conversation_engine import EngineConfig


def test_guardrail_policy_path_from_env(monkeypatch):
    """Test the policy file location is read with the other settings"""
    monkeypatch.setenv("GUARDRAIL_POLICY_PATH", "/etc/colloquy/policy.json")

    assert Settings.from_env().guardrail_policy_path == "/etc/colloquy/policy.json"

    monkeypatch.delenv("GUARDRAIL_POLICY_PATH")
    assert Settings.from_env().guardrail_policy_path is None


def test_engine_config_from_settings(monkeypatch):
    """Test engine defaults follow settings and accept overrides"""
    monkeypatch.setenv("MAX_TOOL_ITERATIONS", "2")
    monkeypatch.setenv("RETRIEVAL_TOKEN_BUDGET", "256")

    config = EngineConfig.from_settings(Settings.from_env(), max_turns=10)

    assert config.max_tool_iterations == 2
    assert config.retrieval_token_budget == 256
    assert config.max_turns == 10
