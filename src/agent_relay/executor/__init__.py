"""Agent process and approval orchestration core.

Starts CLI coding agents (claude, codex, gemini) as child processes, fans
their output out through per-process broadcast stores, normalizes raw lines
into structured entries, and pauses on tool calls that need a human decision.
"""

from agent_relay.executor.agents import AgentKind, build_args, get_agent_spec, resolve_executable
from agent_relay.executor.approvals import APPROVAL_TIMEOUT_SECONDS, ApprovalGate, Decision
from agent_relay.executor.command import AgentOverrides, InvocationMode
from agent_relay.executor.errors import (
    AgentRelayError,
    ApprovalConflictError,
    ApprovalNotFoundError,
    ExecutableNotFoundError,
    SessionBusyError,
    SpawnError,
    StoreClosedError,
)
from agent_relay.executor.log_store import LogBroadcastStore, Subscription
from agent_relay.executor.models import (
    ApprovalRequest,
    ApprovalState,
    ApprovalStatus,
    ExecutionSession,
    ExitStatus,
    LogLine,
    NormalizedEntry,
    ProcessState,
    StreamKind,
)
from agent_relay.executor.normalizer import LogNormalizer
from agent_relay.executor.supervisor import ProcessSupervisor, SpawnedProcess

__all__ = [
    "APPROVAL_TIMEOUT_SECONDS",
    "AgentKind",
    "AgentOverrides",
    "AgentRelayError",
    "ApprovalConflictError",
    "ApprovalGate",
    "ApprovalNotFoundError",
    "ApprovalRequest",
    "ApprovalState",
    "ApprovalStatus",
    "Decision",
    "ExecutableNotFoundError",
    "ExecutionSession",
    "ExitStatus",
    "InvocationMode",
    "LogBroadcastStore",
    "LogLine",
    "LogNormalizer",
    "NormalizedEntry",
    "ProcessState",
    "ProcessSupervisor",
    "SessionBusyError",
    "SpawnError",
    "SpawnedProcess",
    "StoreClosedError",
    "StreamKind",
    "Subscription",
    "build_args",
    "get_agent_spec",
    "resolve_executable",
]
