"""Closed set of supported agent CLIs and their invocation grammar."""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from agent_relay.executor.command import (
    AgentOverrides,
    CommandBuilder,
    CommandParts,
    InvocationMode,
    resolve_program,
)
from agent_relay.executor.errors import (
    ExecutableNotFoundError,
    FollowUpNotSupportedError,
    UnknownAgentError,
)
from agent_relay.executor.models import ApprovalRequest, ApprovalState, ApprovalStatus, StreamKind
from agent_relay.executor.normalizer import LogNormalizer


class AgentKind(str, Enum):
    """Agent CLIs the supervisor knows how to drive."""

    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    ECHO = "echo"

    @classmethod
    def parse(cls, value: AgentKind | str) -> AgentKind:
        if isinstance(value, AgentKind):
            return value
        normalized = value.strip().lower()
        try:
            return cls(normalized)
        except ValueError as error:
            supported = ", ".join(kind.value for kind in cls)
            raise UnknownAgentError(
                f"Unsupported agent: {value!r}. Use one of: {supported}.",
            ) from error


SUPPORTED_AGENTS = tuple(kind.value for kind in AgentKind)

ApprovalEncoder = Callable[[ApprovalRequest, ApprovalStatus], dict[str, object]]


def _encode_generic_approval(
    request: ApprovalRequest,
    status: ApprovalStatus,
) -> dict[str, object]:
    payload: dict[str, object] = {
        "type": "approval_response",
        "approval_id": request.request_id,
        "tool_call_id": request.tool_call_id,
        "status": status.state.value,
    }
    if status.reason is not None:
        payload["reason"] = status.reason
    return payload


def _encode_claude_approval(
    request: ApprovalRequest,
    status: ApprovalStatus,
) -> dict[str, object]:
    if status.state == ApprovalState.APPROVED:
        decision: dict[str, object] = {"behavior": "allow", "updatedInput": request.tool_input}
    else:
        message = status.reason or (
            "Approval request timed out"
            if status.state == ApprovalState.TIMED_OUT
            else "Denied by user"
        )
        decision = {"behavior": "deny", "message": message}
    return {
        "type": "control_response",
        "response": {
            "subtype": "success",
            "request_id": request.tool_call_id,
            "response": decision,
        },
    }


def _encode_codex_approval(
    request: ApprovalRequest,
    status: ApprovalStatus,
) -> dict[str, object]:
    return {
        "type": "patch_approval" if request.tool_name == "apply_patch" else "exec_approval",
        "id": request.tool_call_id,
        "decision": "approved" if status.state == ApprovalState.APPROVED else "denied",
    }


@dataclass(frozen=True, slots=True)
class AgentSpec:
    """Invocation grammar and output protocol of one agent CLI."""

    kind: AgentKind
    base_command: str
    default_params: tuple[str, ...] = ()
    model_flag: str | None = "--model"
    full_auto_params: tuple[str, ...] = ()
    resume_params: tuple[str, ...] = ()
    rewind_params: tuple[str, ...] | None = None
    prompt_flag: str | None = None
    # CLIs that read piped stdin until EOF get /dev/null instead.
    stdin_open: bool = True
    approval_encoder: ApprovalEncoder = _encode_generic_approval

    def command_builder(self, overrides: AgentOverrides | None = None) -> CommandBuilder:
        overrides = overrides or AgentOverrides()
        builder = CommandBuilder(self.base_command).extend_params(self.default_params)
        if overrides.base_command:
            builder.override_base(overrides.base_command)
        if overrides.model and self.model_flag:
            builder.extend_params([self.model_flag, overrides.model])
        if overrides.full_auto:
            builder.extend_params(self.full_auto_params)
        builder.extend_shell_params(overrides.extra_params)
        return builder

    def resolve_executable(self, overrides: AgentOverrides | None = None) -> str:
        program = self.command_builder(overrides).build_initial().program
        try:
            return resolve_program(program)
        except ExecutableNotFoundError as error:
            raise ExecutableNotFoundError(program, agent=self.kind.value) from error

    def build_args(
        self,
        mode: InvocationMode,
        overrides: AgentOverrides | None = None,
        *,
        session_id: str | None = None,
        reset_to_message_id: str | None = None,
    ) -> CommandParts:
        builder = self.command_builder(overrides)
        if mode == InvocationMode.INITIAL:
            return builder.build_initial()
        return builder.build_follow_up(
            self.follow_up_args(session_id=session_id, reset_to_message_id=reset_to_message_id),
        )

    def follow_up_args(
        self,
        *,
        session_id: str | None,
        reset_to_message_id: str | None,
    ) -> list[str]:
        if not session_id:
            raise FollowUpNotSupportedError(
                f"Follow-up for agent={self.kind.value} requires a session id",
            )
        if not self.resume_params:
            raise FollowUpNotSupportedError(f"Agent {self.kind.value} cannot resume sessions")
        args = [part.format(session_id=session_id) for part in self.resume_params]
        if reset_to_message_id:
            if self.rewind_params is None:
                raise FollowUpNotSupportedError(
                    f"Agent {self.kind.value} cannot rewind to an earlier message",
                )
            args.extend(
                part.format(message_id=reset_to_message_id) for part in self.rewind_params
            )
        return args

    def prompt_args(self, prompt: str, overrides: AgentOverrides | None = None) -> list[str]:
        combined = (overrides or AgentOverrides()).combine_prompt(prompt)
        if self.prompt_flag:
            return [self.prompt_flag, combined]
        return [combined]

    def new_normalizer(
        self,
        stream: StreamKind = StreamKind.STDOUT,
        *,
        cluster_chars: int | None = None,
        cluster_gap_seconds: float | None = None,
    ) -> LogNormalizer:
        return LogNormalizer(
            self.kind.value,
            stream=stream,
            cluster_chars=cluster_chars,
            cluster_gap_seconds=cluster_gap_seconds,
        )

    def encode_approval(self, request: ApprovalRequest, status: ApprovalStatus) -> str:
        """Render an approval outcome as one stdin line for the agent."""

        payload = self.approval_encoder(request, status)
        return json.dumps(payload, ensure_ascii=False, default=str) + "\n"


def _python_module_command(module: str) -> str:
    if os.name == "nt":
        return f"{subprocess.list2cmdline([sys.executable])} -m {module}"
    return f"{shlex.quote(sys.executable)} -m {module}"


_AGENT_SPECS: dict[AgentKind, AgentSpec] = {
    AgentKind.CLAUDE: AgentSpec(
        kind=AgentKind.CLAUDE,
        base_command="claude",
        default_params=("-p", "--verbose", "--output-format=stream-json"),
        full_auto_params=("--dangerously-skip-permissions",),
        resume_params=("--resume", "{session_id}"),
        rewind_params=("--resume-session-at", "{message_id}"),
        stdin_open=False,
        approval_encoder=_encode_claude_approval,
    ),
    AgentKind.CODEX: AgentSpec(
        kind=AgentKind.CODEX,
        base_command="codex exec",
        default_params=("--json",),
        full_auto_params=("--full-auto",),
        resume_params=("resume", "{session_id}"),
        approval_encoder=_encode_codex_approval,
    ),
    AgentKind.GEMINI: AgentSpec(
        kind=AgentKind.GEMINI,
        base_command="gemini",
        default_params=("--output-format", "stream-json"),
        full_auto_params=("--approval-mode", "yolo"),
        resume_params=("--resume", "{session_id}"),
        prompt_flag="--prompt",
        stdin_open=False,
    ),
    AgentKind.ECHO: AgentSpec(
        kind=AgentKind.ECHO,
        base_command=_python_module_command("agent_relay.executor.echo_agent"),
        full_auto_params=("--full-auto",),
        resume_params=("--resume", "{session_id}"),
        rewind_params=("--rewind-to", "{message_id}"),
        prompt_flag="--prompt",
    ),
}


def get_agent_spec(kind: AgentKind | str) -> AgentSpec:
    """Return the invocation spec for ``kind``."""

    return _AGENT_SPECS[AgentKind.parse(kind)]


def resolve_executable(kind: AgentKind | str, overrides: AgentOverrides | None = None) -> str:
    """Locate the agent's executable; raises ``ExecutableNotFoundError``."""

    return get_agent_spec(kind).resolve_executable(overrides)


def build_args(
    kind: AgentKind | str,
    mode: InvocationMode,
    overrides: AgentOverrides | None = None,
    *,
    session_id: str | None = None,
    reset_to_message_id: str | None = None,
) -> CommandParts:
    """Build the ordered argv (without prompt) for an initial or follow-up run."""

    return get_agent_spec(kind).build_args(
        mode,
        overrides,
        session_id=session_id,
        reset_to_message_id=reset_to_message_id,
    )
