"""Tests for structured_agent.config: defaults, validation, env loading."""

from __future__ import annotations

import logging

import pytest

from structured_agent.config import (
    AUTO_EXECUTE_TOOLS_ENV,
    MAX_RETRIES_ENV,
    MAX_STEPS_ENV,
    MAX_TOOL_CALLS_PER_TOOL_ENV,
    RETRY_BASE_DELAY_ENV,
    AgentConfiguration,
    RetryConfiguration,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        MAX_STEPS_ENV,
        AUTO_EXECUTE_TOOLS_ENV,
        MAX_TOOL_CALLS_PER_TOOL_ENV,
        MAX_RETRIES_ENV,
        RETRY_BASE_DELAY_ENV,
    ):
        monkeypatch.delenv(name, raising=False)


class TestAgentConfiguration:
    def test_defaults(self):
        config = AgentConfiguration()
        assert config.max_steps == 10
        assert config.auto_execute_tools is True
        assert config.max_duplicate_tool_calls == 2
        assert config.max_tool_calls_per_tool == 5

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_steps": 0},
            {"max_duplicate_tool_calls": 0},
            {"max_tool_calls_per_tool": 0},
        ],
    )
    def test_rejects_non_positive_bounds(self, kwargs):
        with pytest.raises(ValueError):
            AgentConfiguration(**kwargs)

    def test_per_tool_limit_may_be_disabled(self):
        assert AgentConfiguration(max_tool_calls_per_tool=None).max_tool_calls_per_tool is None

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv(MAX_STEPS_ENV, "25")
        monkeypatch.setenv(AUTO_EXECUTE_TOOLS_ENV, "off")
        monkeypatch.setenv(MAX_TOOL_CALLS_PER_TOOL_ENV, "none")
        config = AgentConfiguration.from_env()
        assert config.max_steps == 25
        assert config.auto_execute_tools is False
        assert config.max_tool_calls_per_tool is None

    def test_invalid_env_warns_and_defaults(self, monkeypatch, caplog):
        monkeypatch.setenv(MAX_STEPS_ENV, "-3")
        with caplog.at_level(logging.WARNING, logger="structured_agent.config"):
            config = AgentConfiguration.from_env()
        assert config.max_steps == 10
        assert MAX_STEPS_ENV in caplog.text


class TestRetryConfiguration:
    def test_presets(self):
        assert RetryConfiguration.default() == RetryConfiguration(5, 1.0, 60.0)
        assert RetryConfiguration.aggressive() == RetryConfiguration(10, 0.5, 120.0)
        assert RetryConfiguration.conservative() == RetryConfiguration(3, 2.0, 30.0)
        assert not RetryConfiguration.disabled().is_enabled

    def test_custom(self):
        config = RetryConfiguration.custom(max_retries=2, base_delay=0.1)
        assert config.max_retries == 2
        assert config.base_delay == 0.1
        assert config.max_delay == 60.0

    def test_rejects_negative(self):
        with pytest.raises(ValueError):
            RetryConfiguration(max_retries=-1)
        with pytest.raises(ValueError):
            RetryConfiguration(base_delay=-1.0)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv(MAX_RETRIES_ENV, "0")
        monkeypatch.setenv(RETRY_BASE_DELAY_ENV, "0.25")
        config = RetryConfiguration.from_env()
        assert config.max_retries == 0
        assert config.base_delay == 0.25
        assert not config.is_enabled

    def test_invalid_env_warns(self, monkeypatch, caplog):
        monkeypatch.setenv(RETRY_BASE_DELAY_ENV, "soon")
        with caplog.at_level(logging.WARNING, logger="structured_agent.config"):
            config = RetryConfiguration.from_env()
        assert config.base_delay == 1.0
        assert "Invalid" in caplog.text
