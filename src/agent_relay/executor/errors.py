"""Typed failures surfaced synchronously to callers of the executor core."""

from __future__ import annotations


class AgentRelayError(RuntimeError):
    """Base class for reportable executor failures."""


class ExecutableNotFoundError(AgentRelayError):
    """Agent executable cannot be located on this system."""

    def __init__(self, program: str, *, agent: str | None = None) -> None:
        label = f" for agent={agent}" if agent else ""
        super().__init__(f"Executable not found in PATH{label}: {program}")
        self.program = program
        self.agent = agent


class UnknownAgentError(AgentRelayError, ValueError):
    """Agent kind is outside the supported set."""


class CommandBuildError(AgentRelayError, ValueError):
    """Base command or extra params cannot be turned into an argv."""


class FollowUpNotSupportedError(AgentRelayError):
    """Agent cannot resume (or rewind) a session the way it was asked to."""


class SpawnError(AgentRelayError):
    """OS refused to start the agent process."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class SessionBusyError(AgentRelayError):
    """Follow-up requested while the session's process is still active."""

    def __init__(self, session_id: str, process_id: str) -> None:
        super().__init__(
            f"Session {session_id} is busy: process {process_id} is still active",
        )
        self.session_id = session_id
        self.process_id = process_id


class UnknownSessionError(AgentRelayError, KeyError):
    """Session id is not registered with the supervisor."""


class UnknownProcessError(AgentRelayError, KeyError):
    """Process id is not registered with the supervisor."""


class StoreClosedError(AgentRelayError):
    """Append or subscribe on a closed log store."""


class ApprovalNotFoundError(AgentRelayError, KeyError):
    """Approval request id is unknown."""


class ApprovalConflictError(AgentRelayError):
    """Approval request is already terminal."""

    def __init__(self, request_id: str, status: object) -> None:
        super().__init__(f"Approval request {request_id} is already completed: {status}")
        self.request_id = request_id
        self.status = status


class UnknownProfileError(AgentRelayError, ValueError):
    """Executor profile (agent plus variant) is not configured."""


class ProcessActiveError(AgentRelayError):
    """Operation needs a finished process but the process is still running."""

    def __init__(self, process_id: str) -> None:
        super().__init__(f"Process {process_id} is still active")
        self.process_id = process_id
