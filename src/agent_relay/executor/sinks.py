"""Collaborator interfaces: where records and approval notifications go."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Protocol

from agent_relay.executor.models import ApprovalRequest, LogLine, NormalizedEntry

logger = logging.getLogger(__name__)


class RecordSink(Protocol):
    """Persistence boundary for process output and approval state changes."""

    def record_log_line(self, process_id: str, line: LogLine) -> None: ...

    def record_entry(self, process_id: str, entry: NormalizedEntry) -> None: ...

    def record_approval(self, request: ApprovalRequest) -> None: ...


class ApprovalNotifier(Protocol):
    """Out-of-band channel that tells a human an approval is waiting."""

    def approval_requested(self, request: ApprovalRequest) -> None: ...


class NullRecordSink:
    """Sink that discards everything."""

    def record_log_line(self, process_id: str, line: LogLine) -> None:
        return None

    def record_entry(self, process_id: str, entry: NormalizedEntry) -> None:
        return None

    def record_approval(self, request: ApprovalRequest) -> None:
        return None


@dataclass(slots=True)
class MemoryRecordSink:
    """Keeps every record in memory, keyed by process id."""

    log_lines: dict[str, list[LogLine]] = field(default_factory=dict)
    entries: dict[str, list[NormalizedEntry]] = field(default_factory=dict)
    approvals: list[ApprovalRequest] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_log_line(self, process_id: str, line: LogLine) -> None:
        with self._lock:
            self.log_lines.setdefault(process_id, []).append(line)

    def record_entry(self, process_id: str, entry: NormalizedEntry) -> None:
        with self._lock:
            self.entries.setdefault(process_id, []).append(entry)

    def record_approval(self, request: ApprovalRequest) -> None:
        # Snapshot: the gate keeps mutating the live request object.
        with self._lock:
            self.approvals.append(replace(request))

    def approval_history(self, request_id: str) -> list[str]:
        """Return the recorded status sequence of one request."""

        with self._lock:
            return [
                item.status.state.value for item in self.approvals if item.request_id == request_id
            ]


class LoggingApprovalNotifier:
    """Notifier that writes a warning line for every new approval request."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def approval_requested(self, request: ApprovalRequest) -> None:
        self._log.warning(
            "Approval required: request=%s process=%s tool=%s timeout_at=%s",
            request.request_id,
            request.process_id,
            request.tool_name,
            request.timeout_at.isoformat(),
        )


def safe_record(action: str, func: Callable[..., object], *args: object) -> None:
    """Call a collaborator, logging instead of propagating its failure."""

    try:
        func(*args)
    except Exception:
        logger.exception("Record sink failed during %s", action)
