"""Named executor profiles: an agent plus one variant of its command settings.

A profile is written ``agent:VARIANT`` (``claude:PLAN``). Variant names are
canonicalized to SCREAMING_SNAKE_CASE so ``read-only``, ``readOnly`` and
``READ_ONLY`` reach the same entry. A bare agent name means ``DEFAULT``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

from agent_relay.executor.agents import AgentKind
from agent_relay.executor.command import AgentOverrides
from agent_relay.executor.errors import UnknownProfileError

DEFAULT_VARIANT = "DEFAULT"

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SEPARATORS = re.compile(r"[\s\-]+")


def canonical_variant_key(raw: str | None) -> str:
    """Return the stored key for a variant name, ``DEFAULT`` when empty."""

    if raw is None or not raw.strip():
        return DEFAULT_VARIANT
    text = raw.strip()
    if text.upper() == DEFAULT_VARIANT:
        return DEFAULT_VARIANT
    text = _CAMEL_BOUNDARY.sub("_", text)
    return _SEPARATORS.sub("_", text).upper()


@dataclass(frozen=True, slots=True)
class ProfileId:
    """Agent plus canonical variant key."""

    agent: str
    variant: str = DEFAULT_VARIANT

    @classmethod
    def parse(cls, value: str) -> ProfileId:
        agent, separator, variant = value.partition(":")
        kind = AgentKind.parse(agent)
        return cls(kind.value, canonical_variant_key(variant if separator else None))

    @classmethod
    def of(cls, agent: AgentKind | str, variant: str | None = None) -> ProfileId:
        return cls(AgentKind.parse(agent).value, canonical_variant_key(variant))

    @property
    def is_default(self) -> bool:
        return self.variant == DEFAULT_VARIANT

    def __str__(self) -> str:
        return f"{self.agent}:{self.variant}"


def resolve_profile_overrides(
    profile: ProfileId,
    defaults: Mapping[str, AgentOverrides],
    variants: Mapping[ProfileId, AgentOverrides],
) -> AgentOverrides:
    """Pick the overrides a profile runs with.

    The default variant falls back to empty overrides; any other variant must
    be configured.
    """

    if profile.is_default:
        return defaults.get(profile.agent) or AgentOverrides()
    overrides = variants.get(profile)
    if overrides is None:
        raise UnknownProfileError(f"Unknown executor profile: {profile}")
    return overrides
