"""CLI-facing controllers for running and inspecting agents."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path

from agent_relay.config import Settings
from agent_relay.executor.agents import SUPPORTED_AGENTS, AgentKind, get_agent_spec
from agent_relay.executor.approvals import Decision
from agent_relay.executor.command import InvocationMode
from agent_relay.executor.errors import ApprovalConflictError, ExecutableNotFoundError
from agent_relay.executor.models import ApprovalRequest, LogLine, StreamKind
from agent_relay.executor.profiles import ProfileId
from agent_relay.executor.sinks import LoggingApprovalNotifier, MemoryRecordSink
from agent_relay.executor.supervisor import ProcessSupervisor

APPROVAL_POLICIES = ("ask", "approve", "deny")
POLICY_DENIAL_REASON = "denied by policy"


@dataclass(slots=True)
class AgentRunCommand:
    """CLI input for one supervised agent run."""

    prompt: str
    agent: str | None = None
    variant: str | None = None
    cwd: Path | None = None
    model: str | None = None
    full_auto: bool = False
    extra_params: tuple[str, ...] = ()
    approval_policy: str = "ask"
    timeout_seconds: int = 600
    raw: bool = False
    confirm: Callable[[ApprovalRequest], bool] | None = None


@dataclass(slots=True)
class AgentWhichCommand:
    """CLI input for executable resolution report."""

    agents: tuple[str, ...] = ()


@dataclass(slots=True)
class AgentRunResult:
    """Run summary to render in CLI."""

    lines: list[str]
    success: bool
    entries: int = 0
    approvals: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AgentWhichResult:
    lines: list[str]
    success: bool


class ExecutorCliController:
    """Coordinates supervised runs and executable lookup for the CLI."""

    def run(self, command: AgentRunCommand, emit: Callable[[str], None]) -> AgentRunResult:
        """Spawn the agent, stream its output through ``emit`` and summarize."""

        settings = Settings.from_env()
        settings.validate()
        agent = AgentKind.parse(command.agent or settings.default_agent)
        if command.approval_policy not in APPROVAL_POLICIES:
            raise ValueError(f"Unsupported approval policy: {command.approval_policy!r}")

        profile = ProfileId.of(agent, command.variant)
        base = settings.profile(profile.agent, profile.variant).to_overrides()
        overrides = replace(
            base,
            model=command.model or base.model,
            full_auto=command.full_auto or base.full_auto,
            extra_params=(*base.extra_params, *command.extra_params),
        )
        sink = MemoryRecordSink()
        supervisor = ProcessSupervisor.from_settings(
            settings,
            sink=sink,
            notifier=LoggingApprovalNotifier(),
        )
        timed_out = threading.Event()
        started = time.monotonic()
        try:
            session = supervisor.create_session(agent, variant=command.variant)
            process = supervisor.spawn(
                session,
                command.prompt,
                cwd=command.cwd,
                overrides=overrides,
            )

            def _expire() -> None:
                timed_out.set()
                supervisor.cancel(process, wait=False)

            timer = threading.Timer(command.timeout_seconds, _expire)
            timer.daemon = True
            timer.start()
            try:
                for line in supervisor.stream(process):
                    rendered = render_line(line, raw=command.raw)
                    if rendered is not None:
                        emit(rendered)
                    self._apply_policy(supervisor, process.process_id, command)
                status = supervisor.wait(process)
            finally:
                timer.cancel()
        finally:
            supervisor.shutdown()

        approvals = {
            request.request_id: request.status.state.value
            for request in sink.approvals
        }
        entries = len(process.normalized_entries())
        lines = [
            "Agent run:",
            f"agent={agent.value}",
            f"profile={profile}",
            f"session_id={session.session_id}",
            f"agent_session_id={session.agent_session_id or '-'}",
            f"process_id={process.process_id}",
            f"state={status.state.value if status else '-'}",
            f"exit_code={status.code if status else '-'}",
            f"entries={entries}",
            f"approvals={len(approvals)}",
            f"elapsed_seconds={time.monotonic() - started:.1f}",
        ]
        if timed_out.is_set():
            lines.append(f"Timed out after {command.timeout_seconds}s; process was cancelled.")
        success = bool(status and status.success) and not timed_out.is_set()
        lines.append(f"Run status: {'passed' if success else 'failed'}")
        return AgentRunResult(lines=lines, success=success, entries=entries, approvals=approvals)

    def which(self, command: AgentWhichCommand) -> AgentWhichResult:
        """Resolve each agent's executable and show its initial argv."""

        settings = Settings.from_env()
        selected = command.agents or SUPPORTED_AGENTS
        lines = ["Agent executables:"]
        success = True
        for name in selected:
            spec = get_agent_spec(name)
            overrides = settings.agent(spec.kind.value).to_overrides()
            parts = spec.build_args(InvocationMode.INITIAL, overrides)
            try:
                executable = spec.resolve_executable(overrides)
            except ExecutableNotFoundError as error:
                success = False
                lines.append(f"  agent={spec.kind.value} available=no error={error}")
                continue
            argv = " ".join(parts.args)
            lines.append(
                f"  agent={spec.kind.value} available=yes executable={executable} args={argv!r}",
            )
        return AgentWhichResult(lines=lines, success=success)

    def profiles(self) -> list[str]:
        """List configured executor profiles with their effective settings."""

        settings = Settings.from_env()
        settings.validate()
        lines = ["Executor profiles:"]
        for profile in settings.profile_ids():
            agent = settings.profile(profile.agent, profile.variant)
            lines.append(
                f"  {profile} command={agent.command or '-'} model={agent.model or '-'} "
                f"full_auto={'yes' if agent.full_auto else 'no'}",
            )
        return lines

    def _apply_policy(
        self,
        supervisor: ProcessSupervisor,
        process_id: str,
        command: AgentRunCommand,
    ) -> None:
        for request in supervisor.gate.pending(process_id):
            if command.approval_policy == "approve":
                decision = Decision.approve()
            elif command.approval_policy == "deny":
                decision = Decision.deny(POLICY_DENIAL_REASON)
            elif command.confirm is not None and command.confirm(request):
                decision = Decision.approve()
            else:
                decision = Decision.deny("denied by user")
            try:
                supervisor.gate.resolve(request.request_id, decision)
            except ApprovalConflictError:
                continue


def render_line(line: LogLine, *, raw: bool) -> str | None:
    """Format one stored line for terminal output; None hides it."""

    if raw:
        if line.stream == StreamKind.NORMALIZED:
            return None
        return f"[{line.stream.value}] {line.content}"
    if line.stream == StreamKind.SYSTEM:
        return f"[system] {line.content}"
    if line.stream != StreamKind.NORMALIZED:
        return None
    try:
        entry = json.loads(line.content)
    except json.JSONDecodeError:
        return line.content
    return render_entry(entry)


def render_entry(entry: dict[str, object]) -> str:
    action = str(entry.get("action", "message"))
    text = str(entry.get("content") or entry.get("error") or "")
    location = entry.get("file_path")
    if location and entry.get("line_number"):
        location = f"{location}:{entry['line_number']}"
    parts = [f"[{action}]"]
    if entry.get("tool_name"):
        parts.append(str(entry["tool_name"]))
    if location:
        parts.append(str(location))
    if text:
        parts.append(text)
    if entry.get("requires_approval"):
        parts.append("(approval required)")
    return " ".join(parts)
