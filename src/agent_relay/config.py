"""Runtime configuration for agent supervision."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace

from agent_relay.executor.agents import SUPPORTED_AGENTS, AgentKind
from agent_relay.executor.command import AgentOverrides
from agent_relay.executor.errors import UnknownProfileError
from agent_relay.executor.profiles import ProfileId, canonical_variant_key

_LOG_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"})
_VARIANT_FIELDS = ("COMMAND", "MODEL", "FULL_AUTO", "EXTRA_PARAMS")
_VARIANT_ENV = re.compile(
    rf"^AGENT_RELAY_(?P<agent>{'|'.join(agent.upper() for agent in SUPPORTED_AGENTS)})"
    rf"__(?P<variant>[A-Z0-9_]+?)_(?P<field>{'|'.join(_VARIANT_FIELDS)})$",
)


@dataclass(slots=True)
class AgentSettings:
    """Per-agent command overrides."""

    command: str | None = None
    model: str | None = None
    full_auto: bool = False
    extra_params: tuple[str, ...] = ()

    def to_overrides(self) -> AgentOverrides:
        return AgentOverrides(
            base_command=self.command,
            model=self.model,
            full_auto=self.full_auto,
            extra_params=self.extra_params,
        )


@dataclass(slots=True)
class Settings:
    """Application settings loaded from ``AGENT_RELAY_*`` variables.

    Variants are named alternatives to an agent's settings, read from
    ``AGENT_RELAY_<AGENT>__<VARIANT>_<FIELD>`` and keyed by ``(agent, VARIANT)``.
    Fields a variant leaves unset come from the agent's own settings.
    """

    default_agent: str = AgentKind.CODEX.value
    log_level: str = "WARNING"
    graceful_shutdown_seconds: float = 5.0
    sweep_interval_seconds: float = 30.0
    subscriber_buffer: int = 10_000
    plain_text_cluster_chars: int = 8 * 1024
    plain_text_gap_seconds: float = 1.0
    agents: dict[str, AgentSettings] = field(default_factory=dict)
    variants: dict[tuple[str, str], AgentSettings] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local use."""

        agents = {agent: _agent_settings_from_env(agent) for agent in SUPPORTED_AGENTS}
        return cls(
            default_agent=os.getenv("AGENT_RELAY_DEFAULT_AGENT", AgentKind.CODEX.value)
            .strip()
            .lower(),
            log_level=os.getenv("AGENT_RELAY_LOG_LEVEL", "WARNING").strip().upper(),
            graceful_shutdown_seconds=float(
                os.getenv("AGENT_RELAY_GRACEFUL_SHUTDOWN_SECONDS", "5"),
            ),
            sweep_interval_seconds=float(os.getenv("AGENT_RELAY_SWEEP_INTERVAL_SECONDS", "30")),
            subscriber_buffer=int(os.getenv("AGENT_RELAY_SUBSCRIBER_BUFFER", "10000")),
            plain_text_cluster_chars=int(
                os.getenv("AGENT_RELAY_PLAIN_TEXT_CLUSTER_CHARS", "8192"),
            ),
            plain_text_gap_seconds=float(os.getenv("AGENT_RELAY_PLAIN_TEXT_GAP_SECONDS", "1")),
            agents=agents,
            variants=_variants_from_env(agents),
        )

    def agent(self, name: str) -> AgentSettings:
        return self.agents.get(name.strip().lower(), AgentSettings())

    def profile(self, agent: str, variant: str | None = None) -> AgentSettings:
        """Settings for ``agent`` under ``variant``; the default variant never fails."""

        profile = ProfileId.of(agent, variant)
        if profile.is_default:
            return self.agent(profile.agent)
        settings = self.variants.get((profile.agent, profile.variant))
        if settings is None:
            raise UnknownProfileError(f"Unknown executor profile: {profile}")
        return settings

    def profile_ids(self) -> list[ProfileId]:
        defaults = [ProfileId(agent) for agent in SUPPORTED_AGENTS]
        return defaults + [ProfileId(agent, variant) for agent, variant in sorted(self.variants)]

    def validate(self) -> None:
        """Raise configuration error for values the supervisor cannot use."""

        if self.default_agent not in SUPPORTED_AGENTS:
            raise ValueError(
                f"AGENT_RELAY_DEFAULT_AGENT must be one of {', '.join(SUPPORTED_AGENTS)}: "
                f"{self.default_agent!r}",
            )
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"Invalid AGENT_RELAY_LOG_LEVEL: {self.log_level!r}")
        if self.graceful_shutdown_seconds < 0:
            raise ValueError("AGENT_RELAY_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("AGENT_RELAY_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.subscriber_buffer <= 0:
            raise ValueError("AGENT_RELAY_SUBSCRIBER_BUFFER must be a positive integer.")
        if self.plain_text_cluster_chars < 0:
            raise ValueError("AGENT_RELAY_PLAIN_TEXT_CLUSTER_CHARS must be >= 0.")
        if self.plain_text_gap_seconds < 0:
            raise ValueError("AGENT_RELAY_PLAIN_TEXT_GAP_SECONDS must be >= 0.")
        for name, agent in self.agents.items():
            if agent.command is not None and not agent.command.strip():
                raise ValueError(f"AGENT_RELAY_{name.upper()}_COMMAND must not be blank.")
        for (name, variant), agent in self.variants.items():
            if agent.command is not None and not agent.command.strip():
                raise ValueError(
                    f"AGENT_RELAY_{name.upper()}__{variant}_COMMAND must not be blank.",
                )

    def variant_overrides(self) -> dict[ProfileId, AgentOverrides]:
        return {
            ProfileId(agent, variant): settings.to_overrides()
            for (agent, variant), settings in self.variants.items()
        }

    def configure_logging(self) -> None:
        logging.basicConfig(
            level=self.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _agent_settings_from_env(agent: str) -> AgentSettings:
    prefix = f"AGENT_RELAY_{agent.upper()}"
    extra = os.getenv(f"{prefix}_EXTRA_PARAMS", "").strip()
    return AgentSettings(
        command=os.getenv(f"{prefix}_COMMAND") or None,
        model=os.getenv(f"{prefix}_MODEL") or None,
        full_auto=_env_bool(f"{prefix}_FULL_AUTO", default=False),
        extra_params=(extra,) if extra else (),
    )


def _variants_from_env(
    agents: Mapping[str, AgentSettings],
) -> dict[tuple[str, str], AgentSettings]:
    variants: dict[tuple[str, str], AgentSettings] = {}
    for name in sorted(os.environ):
        match = _VARIANT_ENV.match(name)
        if match is None:
            continue
        agent = match["agent"].lower()
        key = (agent, canonical_variant_key(match["variant"]))
        current = variants.get(key) or replace(agents.get(agent) or AgentSettings())
        value = os.environ[name]
        field_name = match["field"]
        if field_name == "COMMAND":
            current.command = value or current.command
        elif field_name == "MODEL":
            current.model = value or current.model
        elif field_name == "FULL_AUTO":
            current.full_auto = _env_bool(name, default=current.full_auto)
        elif value.strip():
            current.extra_params = (value.strip(),)
        variants[key] = current
    return variants


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
