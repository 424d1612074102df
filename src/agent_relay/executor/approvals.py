"""Approval state machine for agent tool calls.

Each request moves from ``pending`` to exactly one terminal status:
``approved``, ``denied`` or ``timed_out``. Resolution and timeout sweeping
race on a per-request lock; the first terminal writer wins and the loser
observes the terminal state. The registry lock is only held for map
insertion and lookup.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from uuid import uuid4

from agent_relay.executor.errors import ApprovalConflictError, ApprovalNotFoundError
from agent_relay.executor.models import ApprovalRequest, ApprovalStatus, utc_now
from agent_relay.executor.sinks import ApprovalNotifier, NullRecordSink, RecordSink, safe_record

logger = logging.getLogger(__name__)

APPROVAL_TIMEOUT_SECONDS = 36_000
DEFAULT_SWEEP_INTERVAL_SECONDS = 30.0
CANCELLED_REASON = "process cancelled"


@dataclass(frozen=True, slots=True)
class Decision:
    """Human verdict handed to ``ApprovalGate.resolve``."""

    approved: bool
    reason: str | None = None

    @classmethod
    def approve(cls) -> Decision:
        return cls(approved=True)

    @classmethod
    def deny(cls, reason: str | None = None) -> Decision:
        return cls(approved=False, reason=reason)

    def to_status(self) -> ApprovalStatus:
        if self.approved:
            return ApprovalStatus.approved()
        return ApprovalStatus.denied(self.reason)


class _Slot:
    __slots__ = ("request", "lock", "done")

    def __init__(self, request: ApprovalRequest) -> None:
        self.request = request
        self.lock = threading.Lock()
        self.done = threading.Event()


class ApprovalGate:
    """Registry of approval requests with timeout expiry."""

    def __init__(
        self,
        sink: RecordSink | None = None,
        notifier: ApprovalNotifier | None = None,
        *,
        timeout_seconds: float = APPROVAL_TIMEOUT_SECONDS,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.sink = sink or NullRecordSink()
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds
        self._registry_lock = threading.Lock()
        self._slots: dict[str, _Slot] = {}
        self._by_tool_call: dict[tuple[str, str], str] = {}
        self._sweeper_stop = threading.Event()
        self._sweeper_thread: threading.Thread | None = None

    def request(
        self,
        tool_name: str,
        tool_input: object,
        tool_call_id: str,
        process_id: str,
        now: datetime | None = None,
    ) -> ApprovalRequest:
        """Open a pending request; repeated calls for a pending tool call return it."""

        created_at = now or utc_now()
        key = (process_id, tool_call_id)
        with self._registry_lock:
            existing_id = self._by_tool_call.get(key)
            if existing_id is not None:
                existing = self._slots[existing_id]
                if existing.request.is_pending:
                    return replace(existing.request)
            request = ApprovalRequest(
                request_id=str(uuid4()),
                process_id=process_id,
                tool_name=tool_name,
                tool_input=tool_input,
                tool_call_id=tool_call_id,
                created_at=created_at,
                timeout_at=created_at + timedelta(seconds=self.timeout_seconds),
            )
            self._slots[request.request_id] = _Slot(request)
            self._by_tool_call[key] = request.request_id
            snapshot = replace(request)

        logger.info(
            "Approval requested: request=%s process=%s tool=%s",
            request.request_id,
            process_id,
            tool_name,
        )
        safe_record("approval request", self.sink.record_approval, snapshot)
        if self.notifier is not None:
            safe_record("approval notification", self.notifier.approval_requested, snapshot)
        return snapshot

    def resolve(
        self,
        request_id: str,
        decision: Decision,
        now: datetime | None = None,
    ) -> ApprovalRequest:
        """Apply a human decision made before the request's deadline.

        Raises ``ApprovalConflictError`` when the request is already terminal
        or its deadline has passed (the request is then timed out), and
        ``ApprovalNotFoundError`` for unknown ids.
        """

        slot = self._slot(request_id)
        wanted = decision.to_status()
        applied = self._transition(slot, wanted, now, enforce_deadline=True)
        snapshot = self._snapshot(slot)
        if applied != wanted:
            raise ApprovalConflictError(request_id, snapshot.status.state.value)
        return snapshot

    def sweep(self, now: datetime | None = None) -> list[ApprovalRequest]:
        """Time out every pending request whose deadline has passed."""

        current = now or utc_now()
        with self._registry_lock:
            candidates = [
                slot
                for slot in self._slots.values()
                if slot.request.is_pending and current > slot.request.timeout_at
            ]
        expired = [
            self._snapshot(slot)
            for slot in candidates
            if self._transition(slot, ApprovalStatus.timed_out(), current) is not None
        ]
        if expired:
            logger.info("Approval sweep timed out %d request(s)", len(expired))
        return expired

    def cancel_for_process(
        self,
        process_id: str,
        reason: str = CANCELLED_REASON,
    ) -> list[ApprovalRequest]:
        """Deny every pending request belonging to ``process_id``."""

        denied = []
        for request in self.pending(process_id):
            slot = self._slot(request.request_id)
            if self._transition(slot, ApprovalStatus.denied(reason), None) is not None:
                denied.append(self._snapshot(slot))
        return denied

    def forget(self, process_id: str) -> int:
        """Drop terminal requests of ``process_id``; pending ones are kept."""

        with self._registry_lock:
            stale = [
                request_id
                for request_id, slot in self._slots.items()
                if slot.request.process_id == process_id and not slot.request.is_pending
            ]
            for request_id in stale:
                request = self._slots.pop(request_id).request
                key = (request.process_id, request.tool_call_id)
                if self._by_tool_call.get(key) == request_id:
                    del self._by_tool_call[key]
        return len(stale)

    def wait(self, request_id: str, timeout: float | None = None) -> ApprovalStatus:
        """Block until the request is terminal; returns its status either way."""

        slot = self._slot(request_id)
        slot.done.wait(timeout=timeout)
        with slot.lock:
            return slot.request.status

    def get(self, request_id: str) -> ApprovalRequest:
        return self._snapshot(self._slot(request_id))

    def pending(self, process_id: str | None = None) -> list[ApprovalRequest]:
        with self._registry_lock:
            return sorted(
                (
                    replace(slot.request)
                    for slot in self._slots.values()
                    if slot.request.is_pending
                    and (process_id is None or slot.request.process_id == process_id)
                ),
                key=lambda request: request.created_at,
            )

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._slots)

    def has_pending(self, process_id: str) -> bool:
        return bool(self.pending(process_id))

    def pending_process_ids(self, process_ids: list[str] | None = None) -> set[str]:
        """Return which of ``process_ids`` (all when None) have pending requests."""

        wanted = set(process_ids) if process_ids is not None else None
        with self._registry_lock:
            return {
                slot.request.process_id
                for slot in self._slots.values()
                if slot.request.is_pending
                and (wanted is None or slot.request.process_id in wanted)
            }

    # -- background sweeper ----------------------------------------------------

    def start_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        if self._sweeper_thread is not None:
            return
        self._sweeper_stop.clear()
        self._sweeper_thread = threading.Thread(
            target=self._sweeper_loop,
            args=(interval_seconds,),
            daemon=True,
            name="approval-sweeper",
        )
        self._sweeper_thread.start()
        logger.info("Approval sweeper started (interval=%ss)", interval_seconds)

    def stop_sweeper(self) -> None:
        if self._sweeper_thread is None:
            return
        self._sweeper_stop.set()
        self._sweeper_thread.join(timeout=15)
        self._sweeper_thread = None
        logger.info("Approval sweeper stopped")

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper_thread is not None

    def _sweeper_loop(self, interval_seconds: float) -> None:
        while not self._sweeper_stop.wait(timeout=interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("Approval sweeper error")

    # -- internals -------------------------------------------------------------

    def _slot(self, request_id: str) -> _Slot:
        with self._registry_lock:
            slot = self._slots.get(request_id)
        if slot is None:
            raise ApprovalNotFoundError(request_id)
        return slot

    @staticmethod
    def _snapshot(slot: _Slot) -> ApprovalRequest:
        with slot.lock:
            return replace(slot.request)

    def _transition(
        self,
        slot: _Slot,
        status: ApprovalStatus,
        now: datetime | None,
        *,
        enforce_deadline: bool = False,
    ) -> ApprovalStatus | None:
        """Move a pending request to ``status``; returns the status applied.

        With ``enforce_deadline`` a request past its deadline is timed out
        instead. Returns None when the request was already terminal.
        """

        with slot.lock:
            if not slot.request.is_pending:
                return None
            current = now or utc_now()
            if enforce_deadline and current > slot.request.timeout_at:
                status = ApprovalStatus.timed_out()
            slot.request.status = status
            slot.request.resolved_at = current
            slot.done.set()
            snapshot = replace(slot.request)
        logger.info(
            "Approval %s -> %s%s",
            snapshot.request_id,
            status.state.value,
            f" ({status.reason})" if status.reason else "",
        )
        safe_record("approval update", self.sink.record_approval, snapshot)
        return status
