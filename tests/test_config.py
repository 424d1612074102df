from __future__ import annotations

import allure
import pytest

from agent_relay.config import AgentSettings, Settings
from agent_relay.executor.agents import build_args
from agent_relay.executor.command import InvocationMode
from agent_relay.executor.errors import UnknownProfileError
from agent_relay.executor.profiles import ProfileId, canonical_variant_key
from agent_relay.executor.supervisor import ProcessSupervisor

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Configuration"),
]


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.default_agent == "codex"
    assert settings.log_level == "WARNING"
    assert settings.graceful_shutdown_seconds == 5.0
    assert settings.sweep_interval_seconds == 30.0
    assert settings.subscriber_buffer == 10_000
    assert settings.agent("claude") == AgentSettings()
    settings.validate()


def test_from_env_reads_per_agent_overrides(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_DEFAULT_AGENT", "Claude")
    monkeypatch.setenv("AGENT_RELAY_CLAUDE_COMMAND", "npx -y @anthropic-ai/claude-code")
    monkeypatch.setenv("AGENT_RELAY_CLAUDE_MODEL", "sonnet")
    monkeypatch.setenv("AGENT_RELAY_CLAUDE_FULL_AUTO", "yes")
    monkeypatch.setenv("AGENT_RELAY_CLAUDE_EXTRA_PARAMS", "--max-turns 5 --add-dir '/tmp/a b'")

    settings = Settings.from_env()
    overrides = settings.agent("claude").to_overrides()

    assert settings.default_agent == "claude"
    assert overrides.base_command == "npx -y @anthropic-ai/claude-code"
    assert overrides.model == "sonnet"
    assert overrides.full_auto is True
    assert overrides.extra_params == ("--max-turns 5 --add-dir '/tmp/a b'",)
    parts = build_args("claude", InvocationMode.INITIAL, overrides)
    assert parts.argv()[:3] == ["npx", "-y", "@anthropic-ai/claude-code"]
    assert parts.argv()[-4:] == ["--max-turns", "5", "--add-dir", "/tmp/a b"]


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_CODEX_FULL_AUTO", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(default_agent="cursor"), "AGENT_RELAY_DEFAULT_AGENT"),
        (Settings(log_level="LOUD"), "AGENT_RELAY_LOG_LEVEL"),
        (Settings(graceful_shutdown_seconds=-1), "GRACEFUL_SHUTDOWN_SECONDS"),
        (Settings(sweep_interval_seconds=0), "SWEEP_INTERVAL_SECONDS"),
        (Settings(subscriber_buffer=0), "SUBSCRIBER_BUFFER"),
        (Settings(agents={"codex": AgentSettings(command="  ")}), "AGENT_RELAY_CODEX_COMMAND"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_supervisor_from_settings_applies_values() -> None:
    settings = Settings(
        graceful_shutdown_seconds=1.5,
        subscriber_buffer=42,
        sweep_interval_seconds=60,
        agents={"codex": AgentSettings(model="gpt-5-codex")},
    )

    supervisor = ProcessSupervisor.from_settings(settings)
    try:
        assert supervisor.graceful_shutdown_seconds == 1.5
        assert supervisor.subscriber_buffer == 42
        assert supervisor.overrides["codex"].model == "gpt-5-codex"
        assert supervisor.gate.sweeper_running
    finally:
        supervisor.shutdown()

    assert not supervisor.gate.sweeper_running


def test_variants_inherit_agent_settings(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_CLAUDE_MODEL", "sonnet")
    monkeypatch.setenv("AGENT_RELAY_CLAUDE_FULL_AUTO", "true")
    monkeypatch.setenv("AGENT_RELAY_CLAUDE__PLAN_EXTRA_PARAMS", "--permission-mode plan")
    monkeypatch.setenv("AGENT_RELAY_CLAUDE__READ_ONLY_FULL_AUTO", "false")
    monkeypatch.setenv("AGENT_RELAY_CLAUDE__READ_ONLY_MODEL", "haiku")

    settings = Settings.from_env()

    plan = settings.profile("claude", "plan")
    assert plan.model == "sonnet"
    assert plan.full_auto is True
    assert plan.extra_params == ("--permission-mode plan",)
    read_only = settings.profile("claude", "readOnly")
    assert read_only.model == "haiku"
    assert read_only.full_auto is False
    assert settings.profile("claude") == settings.agent("claude")
    assert [str(profile) for profile in settings.profile_ids()][-2:] == [
        "claude:PLAN",
        "claude:READ_ONLY",
    ]


def test_unknown_variant_raises(monkeypatch) -> None:
    settings = Settings.from_env()

    with pytest.raises(UnknownProfileError, match="codex:NIGHTLY"):
        settings.profile("codex", "nightly")


def test_plain_text_clustering_settings(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_PLAIN_TEXT_CLUSTER_CHARS", "0")
    monkeypatch.setenv("AGENT_RELAY_PLAIN_TEXT_GAP_SECONDS", "0.25")

    settings = Settings.from_env()
    supervisor = ProcessSupervisor.from_settings(settings)
    try:
        assert settings.plain_text_cluster_chars == 0
        assert supervisor.cluster_chars is None
        assert supervisor.cluster_gap_seconds == 0.25
    finally:
        supervisor.shutdown()

    assert Settings().plain_text_cluster_chars == 8 * 1024
    with pytest.raises(ValueError, match="PLAIN_TEXT_GAP_SECONDS"):
        Settings(plain_text_gap_seconds=-1).validate()
    with pytest.raises(ValueError, match="AGENT_RELAY_CODEX__FAST_COMMAND"):
        Settings(variants={("codex", "FAST"): AgentSettings(command=" ")}).validate()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, "DEFAULT"),
        ("", "DEFAULT"),
        ("default", "DEFAULT"),
        ("plan", "PLAN"),
        ("readOnly", "READ_ONLY"),
        ("read-only", "READ_ONLY"),
        ("deep think", "DEEP_THINK"),
        ("READ_ONLY", "READ_ONLY"),
    ],
)
def test_canonical_variant_key(raw: str | None, expected: str) -> None:
    assert canonical_variant_key(raw) == expected


def test_profile_id_parse_and_format() -> None:
    assert ProfileId.parse("Claude:plan") == ProfileId("claude", "PLAN")
    assert ProfileId.parse("codex") == ProfileId("codex", "DEFAULT")
    assert ProfileId.parse("codex").is_default
    assert str(ProfileId.of("gemini", "fast-mode")) == "gemini:FAST_MODE"
