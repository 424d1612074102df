"""Domain models for supervised agent processes, logs, and approvals."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


def utc_now() -> datetime:
    """Return timezone-aware current UTC time."""

    return datetime.now(tz=UTC)


class StreamKind(str, Enum):
    """Origin of one log line inside a broadcast store."""

    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"
    NORMALIZED = "normalized"


class ProcessState(str, Enum):
    """Lifecycle states of one spawned agent process."""

    STARTING = "starting"
    RUNNING = "running"
    CANCELLING = "cancelling"
    EXITED = "exited"
    KILLED = "killed"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_PROCESS_STATES


ACTIVE_PROCESS_STATES = frozenset(
    {ProcessState.STARTING, ProcessState.RUNNING, ProcessState.CANCELLING},
)


class ApprovalState(str, Enum):
    """Approval request lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True, slots=True)
class ApprovalStatus:
    """Approval status with optional denial reason."""

    state: ApprovalState
    reason: str | None = None

    @classmethod
    def pending(cls) -> ApprovalStatus:
        return cls(ApprovalState.PENDING)

    @classmethod
    def approved(cls) -> ApprovalStatus:
        return cls(ApprovalState.APPROVED)

    @classmethod
    def denied(cls, reason: str | None = None) -> ApprovalStatus:
        return cls(ApprovalState.DENIED, reason)

    @classmethod
    def timed_out(cls) -> ApprovalStatus:
        return cls(ApprovalState.TIMED_OUT)

    @property
    def is_terminal(self) -> bool:
        return self.state != ApprovalState.PENDING

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"status": self.state.value}
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


@dataclass(frozen=True, slots=True)
class LogLine:
    """One immutable unit of process output."""

    stream: StreamKind
    content: str
    sequence: int
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class NormalizedEntry:
    """Structured interpretation of a contiguous range of log lines."""

    action: str
    source_range: tuple[int, int]
    content: str = ""
    file_path: str | None = None
    line_number: int | None = None
    error: str | None = None
    tool_name: str | None = None
    tool_input: Any = None
    tool_call_id: str | None = None
    requires_approval: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the `normalized` stream and record sinks."""

        payload: dict[str, Any] = {
            "action": self.action,
            "source_range": list(self.source_range),
        }
        optional: dict[str, Any] = {
            "content": self.content or None,
            "file_path": self.file_path,
            "line_number": self.line_number,
            "error": self.error,
            "tool_name": self.tool_name,
            "tool_input": self.tool_input,
            "tool_call_id": self.tool_call_id,
            "metadata": self.metadata or None,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if self.requires_approval:
            payload["requires_approval"] = True
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True, default=str)


@dataclass(slots=True)
class Turn:
    """One conversational turn recorded on a session."""

    role: str
    content: str
    message_id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utc_now)


REWIND_ROLE = "rewind"


@dataclass(slots=True)
class ExecutionSession:
    """A conversational thread with one agent; outlives individual processes.

    ``turns`` is append-only. A rewind is recorded as a ``rewind`` turn whose
    content is the message id the conversation went back to; ``conversation()``
    applies those markers.
    """

    agent: str
    session_id: str = field(default_factory=lambda: str(uuid4()))
    turns: list[Turn] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)
    agent_session_id: str | None = None
    active_process_id: str | None = None
    variant: str | None = None

    def add_turn(self, role: str, content: str, message_id: str | None = None) -> Turn:
        turn = Turn(role=role, content=content, message_id=message_id or str(uuid4()))
        self.turns.append(turn)
        return turn

    def mark_rewind(self, message_id: str) -> Turn:
        return self.add_turn(REWIND_ROLE, message_id)

    def conversation(self) -> list[Turn]:
        """Turns still in effect after applying rewind markers, in order."""

        effective: list[Turn] = []
        for turn in list(self.turns):
            if turn.role != REWIND_ROLE:
                effective.append(turn)
                continue
            for index, kept in enumerate(effective):
                if kept.message_id == turn.content:
                    del effective[index + 1 :]
                    break
        return effective

    @property
    def resume_id(self) -> str:
        """Identifier handed to the agent CLI when resuming this session."""

        return self.agent_session_id or self.session_id


@dataclass(frozen=True, slots=True)
class ExitStatus:
    """Terminal outcome of a spawned process."""

    state: ProcessState
    code: int | None

    @property
    def success(self) -> bool:
        return self.state == ProcessState.EXITED and self.code == 0


@dataclass(slots=True)
class ApprovalRequest:
    """Pending or resolved gate on one agent tool call."""

    request_id: str
    process_id: str
    tool_name: str
    tool_input: Any
    tool_call_id: str
    created_at: datetime
    timeout_at: datetime
    status: ApprovalStatus = field(default_factory=ApprovalStatus.pending)
    resolved_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return not self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "process_id": self.process_id,
            "tool_name": self.tool_name,
            "tool_input": self.tool_input,
            "tool_call_id": self.tool_call_id,
            "created_at": self.created_at.isoformat(),
            "timeout_at": self.timeout_at.isoformat(),
            "status": self.status.to_dict(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }
