"""Command-line assembly and executable lookup for agent CLIs."""

from __future__ import annotations

import os
import shlex
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from agent_relay.executor.errors import CommandBuildError, ExecutableNotFoundError


class InvocationMode(str, Enum):
    """Whether a command starts a fresh conversation or resumes one."""

    INITIAL = "initial"
    FOLLOW_UP = "follow_up"


@dataclass(slots=True)
class AgentOverrides:
    """Caller-supplied adjustments applied on top of an agent's defaults.

    Merge order is fixed: base command, agent default params, model flag,
    full-auto flag, ``extra_params`` (shell-split), follow-up args, prompt.
    """

    base_command: str | None = None
    model: str | None = None
    full_auto: bool = False
    extra_params: tuple[str, ...] = ()
    append_prompt: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    def combine_prompt(self, prompt: str) -> str:
        if not self.append_prompt:
            return prompt
        return f"{prompt}{self.append_prompt}"


@dataclass(frozen=True, slots=True)
class CommandParts:
    """Program plus ordered arguments, before executable resolution."""

    program: str
    args: tuple[str, ...]

    def argv(self, *extra: str) -> list[str]:
        return [self.program, *self.args, *extra]

    def resolved(self) -> CommandParts:
        """Return a copy whose program is an absolute executable path."""

        return CommandParts(program=resolve_program(self.program), args=self.args)


class CommandBuilder:
    """Accumulates base command and params; builds initial or follow-up parts."""

    def __init__(self, base: str) -> None:
        self.base = base
        self.params: list[str] = []

    def override_base(self, base: str) -> CommandBuilder:
        self.base = base
        return self

    def extend_params(self, more: list[str] | tuple[str, ...]) -> CommandBuilder:
        self.params.extend(more)
        return self

    def extend_shell_params(self, more: list[str] | tuple[str, ...]) -> CommandBuilder:
        joined = " ".join(more).strip()
        if joined:
            self.params.extend(split_command_line(joined))
        return self

    def build_initial(self) -> CommandParts:
        return self._build(())

    def build_follow_up(self, additional_args: list[str] | tuple[str, ...]) -> CommandParts:
        return self._build(additional_args)

    def _build(self, additional_args: list[str] | tuple[str, ...]) -> CommandParts:
        parts = [*split_command_line(self.base), *self.params, *additional_args]
        program, *args = parts
        return CommandParts(program=program, args=tuple(args))


def split_command_line(text: str, *, os_name: str | None = None) -> list[str]:
    """Split a command string the way the current platform's shell would."""

    stripped = text.strip()
    if not stripped:
        raise CommandBuildError("Base command is empty.")
    posix = (os_name or os.name) != "nt"
    try:
        parts = shlex.split(stripped, posix=posix)
    except ValueError as error:
        raise CommandBuildError(f"Base command cannot be parsed: {text!r}") from error
    if not posix:
        parts = [_strip_windows_quotes(part) for part in parts]
    if not parts:
        raise CommandBuildError("Base command is empty after parsing.")
    return parts


def resolve_program(program: str) -> str:
    """Locate ``program`` on PATH (or verify an explicit path)."""

    if os.path.dirname(program):
        if os.path.isfile(program) and os.access(program, os.X_OK):
            return os.path.abspath(program)
        raise ExecutableNotFoundError(program)
    resolved = shutil.which(program)
    if resolved is None:
        raise ExecutableNotFoundError(program)
    return resolved


def merge_env(
    base: Mapping[str, str] | None,
    *layers: Mapping[str, str] | None,
) -> dict[str, str]:
    """Overlay environment layers left to right on top of ``base``."""

    merged = dict(os.environ if base is None else base)
    for layer in layers:
        if layer:
            merged.update({str(key): str(value) for key, value in layer.items()})
    return merged


def _strip_windows_quotes(part: str) -> str:
    if len(part) >= 2 and part[0] == part[-1] == '"':  # noqa: PLR2004
        return part[1:-1]
    return part
