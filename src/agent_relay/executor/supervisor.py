"""Spawns agent CLIs and wires their output into stores, entries and approvals.

Threading layout per process:

* one reader thread per pipe pushes raw lines into a queue,
* one pump thread drains that queue and is the only writer of the process's
  ``LogBroadcastStore``; it runs the normalizers, records turns, opens
  approval requests and finalizes the process after exit,
* one waiter thread per approval request blocks on the gate and writes the
  encoded decision to the agent's stdin.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from collections.abc import Iterator, Mapping
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO, TYPE_CHECKING
from uuid import uuid4

from agent_relay.executor.agents import AgentKind, AgentSpec, get_agent_spec
from agent_relay.executor.approvals import (
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    ApprovalGate,
)
from agent_relay.executor.command import (
    AgentOverrides,
    InvocationMode,
    merge_env,
    resolve_program,
)
from agent_relay.executor.errors import (
    ExecutableNotFoundError,
    ProcessActiveError,
    SessionBusyError,
    SpawnError,
    StoreClosedError,
    UnknownProcessError,
    UnknownSessionError,
)
from agent_relay.executor.log_store import DEFAULT_SUBSCRIBER_BUFFER, LogBroadcastStore
from agent_relay.executor.models import (
    ApprovalRequest,
    ExecutionSession,
    ExitStatus,
    LogLine,
    NormalizedEntry,
    ProcessState,
    StreamKind,
    utc_now,
)
from agent_relay.executor.normalizer import LogNormalizer
from agent_relay.executor.profiles import ProfileId, resolve_profile_overrides
from agent_relay.executor.sinks import ApprovalNotifier, NullRecordSink, RecordSink, safe_record

if TYPE_CHECKING:
    from agent_relay.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_GRACEFUL_SHUTDOWN_SECONDS = 5.0
EXITED_REASON = "process exited"

_USE_PROCESS_GROUP = os.name != "nt"

_QueueItem = tuple[StreamKind, str | None]


@dataclass(slots=True)
class SpawnedProcess:
    """Handle for one running (or finished) agent process."""

    process_id: str
    session_id: str
    agent: AgentKind
    argv: list[str]
    popen: subprocess.Popen[str]
    store: LogBroadcastStore
    started_at: datetime = field(default_factory=utc_now)
    state: ProcessState = ProcessState.STARTING
    exit_status: ExitStatus | None = None
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    completion: Future[ExitStatus] = field(default_factory=Future)
    entries: list[NormalizedEntry] = field(default_factory=list)
    approval_ids: list[str] = field(default_factory=list)
    undelivered_approvals: set[str] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _stdin_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _input_ready: threading.Condition = field(default_factory=threading.Condition, repr=False)

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self.state.is_active

    def normalized_entries(self) -> list[NormalizedEntry]:
        with self._lock:
            return list(self.entries)


class SessionRegistry:
    """Sessions owned by one supervisor, with the one-active-process reservation."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, ExecutionSession] = {}

    def add(self, session: ExecutionSession) -> ExecutionSession:
        with self._lock:
            self._sessions.setdefault(session.session_id, session)
            return self._sessions[session.session_id]

    def get(self, session_id: str) -> ExecutionSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        return session

    def list(self) -> list[ExecutionSession]:
        with self._lock:
            return list(self._sessions.values())

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def reserve(self, session: ExecutionSession, process_id: str) -> None:
        """Mark ``process_id`` as the session's active process or raise busy."""

        with self._lock:
            self._sessions.setdefault(session.session_id, session)
            if session.active_process_id is not None:
                raise SessionBusyError(session.session_id, session.active_process_id)
            session.active_process_id = process_id

    def release(self, session: ExecutionSession, process_id: str) -> None:
        with self._lock:
            if session.active_process_id == process_id:
                session.active_process_id = None

    def remove(self, session_id: str) -> ExecutionSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise UnknownSessionError(session_id)
            if session.active_process_id is not None:
                raise SessionBusyError(session_id, session.active_process_id)
            del self._sessions[session_id]
        return session


class ProcessRegistry:
    """Processes started by one supervisor, keyed by process id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processes: dict[str, SpawnedProcess] = {}

    def add(self, process: SpawnedProcess) -> None:
        with self._lock:
            self._processes[process.process_id] = process

    def get(self, process_id: str) -> SpawnedProcess:
        with self._lock:
            process = self._processes.get(process_id)
        if process is None:
            raise UnknownProcessError(process_id)
        return process

    def list(self, session_id: str | None = None) -> list[SpawnedProcess]:
        with self._lock:
            return [
                process
                for process in self._processes.values()
                if session_id is None or process.session_id == session_id
            ]

    def active(self) -> list[SpawnedProcess]:
        return [process for process in self.list() if process.is_active]

    def remove(self, process_id: str) -> SpawnedProcess:
        with self._lock:
            process = self._processes.pop(process_id, None)
        if process is None:
            raise UnknownProcessError(process_id)
        return process


class ProcessSupervisor:
    """Owns agent sessions and processes for one embedding application."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        gate: ApprovalGate | None = None,
        sink: RecordSink | None = None,
        notifier: ApprovalNotifier | None = None,
        overrides: Mapping[str, AgentOverrides] | None = None,
        variants: Mapping[ProfileId, AgentOverrides] | None = None,
        base_env: Mapping[str, str] | None = None,
        graceful_shutdown_seconds: float = DEFAULT_GRACEFUL_SHUTDOWN_SECONDS,
        subscriber_buffer: int = DEFAULT_SUBSCRIBER_BUFFER,
        sweep_interval_seconds: float | None = DEFAULT_SWEEP_INTERVAL_SECONDS,
        cluster_chars: int | None = None,
        cluster_gap_seconds: float | None = None,
    ) -> None:
        self.sink = sink or NullRecordSink()
        self.gate = gate or ApprovalGate(sink=self.sink, notifier=notifier)
        self.overrides = dict(overrides or {})
        self.variants = dict(variants or {})
        self.base_env = dict(base_env) if base_env is not None else None
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.subscriber_buffer = subscriber_buffer
        self.cluster_chars = cluster_chars or None
        self.cluster_gap_seconds = cluster_gap_seconds or None
        self.sessions = SessionRegistry()
        self.processes = ProcessRegistry()
        self._owns_sweeper = False
        if sweep_interval_seconds is not None and not self.gate.sweeper_running:
            self.gate.start_sweeper(sweep_interval_seconds)
            self._owns_sweeper = True

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: object) -> ProcessSupervisor:
        """Build a supervisor from environment-derived settings."""

        return cls(
            overrides={name: agent.to_overrides() for name, agent in settings.agents.items()},
            variants=settings.variant_overrides(),
            graceful_shutdown_seconds=settings.graceful_shutdown_seconds,
            subscriber_buffer=settings.subscriber_buffer,
            sweep_interval_seconds=settings.sweep_interval_seconds,
            cluster_chars=settings.plain_text_cluster_chars,
            cluster_gap_seconds=settings.plain_text_gap_seconds,
            **kwargs,  # type: ignore[arg-type]
        )

    # -- sessions --------------------------------------------------------------

    def create_session(
        self,
        agent: AgentKind | str,
        metadata: dict[str, object] | None = None,
        variant: str | None = None,
    ) -> ExecutionSession:
        """Register a session for ``agent``, or for an ``agent:VARIANT`` profile."""

        if isinstance(agent, str) and ":" in agent and variant is None:
            profile = ProfileId.parse(agent)
        else:
            profile = ProfileId.of(agent, variant)
        resolve_profile_overrides(profile, self.overrides, self.variants)
        session = ExecutionSession(
            agent=profile.agent,
            metadata=dict(metadata or {}),
            variant=None if profile.is_default else profile.variant,
        )
        self.sessions.add(session)
        logger.info("Created session %s for profile=%s", session.session_id, profile)
        return session

    def get_session(self, session_id: str) -> ExecutionSession:
        return self.sessions.get(session_id)

    def close_session(self, session_id: str) -> ExecutionSession:
        """Drop an idle session together with its finished processes."""

        session = self.sessions.remove(session_id)
        for process in self.processes.list(session_id):
            self.release(process)
        logger.info("Closed session %s", session_id)
        return session

    # -- spawning --------------------------------------------------------------

    def spawn(  # noqa: PLR0913
        self,
        session: ExecutionSession,
        prompt: str,
        env: Mapping[str, str] | None = None,
        *,
        cwd: str | os.PathLike[str] | None = None,
        overrides: AgentOverrides | None = None,
    ) -> SpawnedProcess:
        """Start a fresh conversation for ``session``."""

        return self._start(
            session,
            prompt,
            InvocationMode.INITIAL,
            env=env,
            cwd=cwd,
            overrides=overrides,
        )

    def spawn_follow_up(  # noqa: PLR0913
        self,
        session: ExecutionSession,
        prompt: str,
        prior_message_id: str | None = None,
        env: Mapping[str, str] | None = None,
        *,
        cwd: str | os.PathLike[str] | None = None,
        overrides: AgentOverrides | None = None,
    ) -> SpawnedProcess:
        """Resume the agent's conversation, optionally rewound to ``prior_message_id``."""

        return self._start(
            session,
            prompt,
            InvocationMode.FOLLOW_UP,
            env=env,
            cwd=cwd,
            overrides=overrides,
            prior_message_id=prior_message_id,
        )

    def _start(  # noqa: PLR0913
        self,
        session: ExecutionSession,
        prompt: str,
        mode: InvocationMode,
        *,
        env: Mapping[str, str] | None,
        cwd: str | os.PathLike[str] | None,
        overrides: AgentOverrides | None,
        prior_message_id: str | None = None,
    ) -> SpawnedProcess:
        spec = get_agent_spec(session.agent)
        if cwd is not None and not os.path.isdir(cwd):
            raise SpawnError(f"Working directory does not exist: {cwd}", transient=False)
        effective = overrides or resolve_profile_overrides(
            ProfileId.of(spec.kind, session.variant),
            self.overrides,
            self.variants,
        )
        parts = spec.build_args(
            mode,
            effective,
            session_id=session.resume_id if mode == InvocationMode.FOLLOW_UP else None,
            reset_to_message_id=prior_message_id,
        )
        try:
            program = resolve_program(parts.program)
        except ExecutableNotFoundError as error:
            raise ExecutableNotFoundError(parts.program, agent=spec.kind.value) from error
        argv = [program, *parts.args, *spec.prompt_args(prompt, effective)]

        process_id = str(uuid4())
        self.sessions.reserve(session, process_id)
        try:
            popen = self._popen(
                spec,
                argv,
                cwd=cwd,
                env=merge_env(
                    self.base_env,
                    effective.env,
                    env,
                    {
                        "AGENT_RELAY_SESSION_ID": session.session_id,
                        "AGENT_RELAY_PROCESS_ID": process_id,
                        "AGENT_RELAY_AGENT": spec.kind.value,
                    },
                ),
            )
        except BaseException:
            self.sessions.release(session, process_id)
            raise

        if prior_message_id:
            session.mark_rewind(prior_message_id)
        session.add_turn("user", prompt)
        process = SpawnedProcess(
            process_id=process_id,
            session_id=session.session_id,
            agent=spec.kind,
            argv=argv,
            popen=popen,
            store=LogBroadcastStore(process_id, max_buffered=self.subscriber_buffer),
        )
        self.processes.add(process)
        self._append(process, StreamKind.SYSTEM, f"started {spec.kind.value} pid={popen.pid}")
        with process._lock:  # noqa: SLF001
            process.state = ProcessState.RUNNING
        logger.info(
            "Spawned %s process %s (pid=%d, mode=%s) for session %s",
            spec.kind.value,
            process_id,
            popen.pid,
            mode.value,
            session.session_id,
        )
        self._start_threads(process, session, spec)
        return process

    def _popen(
        self,
        spec: AgentSpec,
        argv: list[str],
        *,
        cwd: str | os.PathLike[str] | None,
        env: dict[str, str],
    ) -> subprocess.Popen[str]:
        try:
            return subprocess.Popen(  # noqa: S603
                argv,
                cwd=cwd,
                env=env,
                stdin=subprocess.PIPE if spec.stdin_open else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=_USE_PROCESS_GROUP,
            )
        except FileNotFoundError as error:
            if cwd is not None and not os.path.isdir(cwd):
                raise SpawnError(
                    f"Working directory does not exist: {cwd}",
                    transient=False,
                ) from error
            raise ExecutableNotFoundError(argv[0], agent=spec.kind.value) from error
        except PermissionError as error:
            raise SpawnError(f"Agent executable is not runnable: {error}", transient=False) from error
        except OSError as error:
            raise SpawnError(f"Agent process failed to start: {error}", transient=True) from error

    # -- observing -------------------------------------------------------------

    def get_process(self, process_id: str) -> SpawnedProcess:
        return self.processes.get(process_id)

    def exit_status(self, handle: SpawnedProcess | str) -> ExitStatus | None:
        process = self._process(handle)
        with process._lock:  # noqa: SLF001
            return process.exit_status

    def wait(self, handle: SpawnedProcess | str, timeout: float | None = None) -> ExitStatus | None:
        """Block until the process is finalized; None if ``timeout`` elapses first."""

        process = self._process(handle)
        try:
            return process.completion.result(timeout=timeout)
        except FutureTimeoutError:
            return None

    def stream(self, handle: SpawnedProcess | str) -> Iterator[LogLine]:
        """Yield every line of the process: history then live output."""

        process = self._process(handle)
        try:
            subscription = process.store.subscribe()
        except StoreClosedError:
            yield from process.store.history()
            return
        with subscription:
            yield from subscription

    # -- input -----------------------------------------------------------------

    def send_input(
        self,
        handle: SpawnedProcess | str,
        text: str,
        timeout: float | None = None,
    ) -> bool:
        """Forward an instruction to the agent once no approval is pending.

        Returns False when the process has no writable stdin, has finished, or
        an approval is still pending after ``timeout`` seconds.
        """

        process = self._process(handle)
        if process.popen.stdin is None:
            return False
        with process._input_ready:  # noqa: SLF001
            ready = process._input_ready.wait_for(  # noqa: SLF001
                lambda: not process.is_active or not self._approval_outstanding(process),
                timeout=timeout,
            )
        if not ready or not process.is_active:
            return False
        if not self._write_stdin(process, text if text.endswith("\n") else text + "\n"):
            return False
        session = self._session_for(process)
        if session is not None:
            session.add_turn("user", text.rstrip("\n"))
        return True

    def close_input(self, handle: SpawnedProcess | str) -> None:
        """Close the agent's stdin so it sees end of input."""

        process = self._process(handle)
        stdin = process.popen.stdin
        if stdin is None:
            return
        with process._stdin_lock:  # noqa: SLF001
            try:
                stdin.close()
            except OSError:
                logger.debug("stdin close failed for process %s", process.process_id)

    # -- cancellation ----------------------------------------------------------

    def cancel(self, handle: SpawnedProcess | str, *, wait: bool = True) -> ExitStatus | None:
        """Terminate the process: SIGTERM, grace period, then SIGKILL. Idempotent."""

        process = self._process(handle)
        with process._lock:  # noqa: SLF001
            if not process.state.is_active or process.cancel_requested.is_set():
                first_request = False
            else:
                first_request = True
                process.cancel_requested.set()
                process.state = ProcessState.CANCELLING
        if first_request:
            logger.info("Cancelling process %s (pid=%d)", process.process_id, process.pid)
            self.gate.cancel_for_process(process.process_id)
            _terminate_process(process.popen, self.graceful_shutdown_seconds)
        if wait:
            return self.wait(process, timeout=self.graceful_shutdown_seconds + 5)
        return self.exit_status(process)

    def release(self, handle: SpawnedProcess | str) -> SpawnedProcess:
        """Forget a finished process and its resolved approval requests.

        The returned handle stays usable (its store keeps the history), but the
        supervisor no longer finds it by id.
        """

        process = self._process(handle)
        if self.exit_status(process) is None:
            raise ProcessActiveError(process.process_id)
        self.processes.remove(process.process_id)
        forgotten = self.gate.forget(process.process_id)
        logger.debug(
            "Released process %s (%d approval requests dropped)",
            process.process_id,
            forgotten,
        )
        return process

    def shutdown(self) -> None:
        """Cancel every active process and stop the sweeper this supervisor started."""

        for process in self.processes.active():
            try:
                self.cancel(process)
            except Exception:
                logger.exception("Failed to cancel process %s", process.process_id)
        if self._owns_sweeper:
            self.gate.stop_sweeper()
            self._owns_sweeper = False

    # -- threads ---------------------------------------------------------------

    def _start_threads(
        self,
        process: SpawnedProcess,
        session: ExecutionSession,
        spec: AgentSpec,
    ) -> None:
        lines: queue.Queue[_QueueItem] = queue.Queue()
        short_id = process.process_id[:8]
        for kind, pipe in (
            (StreamKind.STDOUT, process.popen.stdout),
            (StreamKind.STDERR, process.popen.stderr),
        ):
            threading.Thread(
                target=_read_pipe,
                args=(pipe, kind, lines),
                daemon=True,
                name=f"agent-{kind.value}-{short_id}",
            ).start()
        threading.Thread(
            target=self._pump,
            args=(process, session, spec, lines),
            daemon=True,
            name=f"agent-pump-{short_id}",
        ).start()

    def _pump(
        self,
        process: SpawnedProcess,
        session: ExecutionSession,
        spec: AgentSpec,
        lines: queue.Queue[_QueueItem],
    ) -> None:
        normalizers = {
            StreamKind.STDOUT: spec.new_normalizer(
                StreamKind.STDOUT,
                cluster_chars=self.cluster_chars,
                cluster_gap_seconds=self.cluster_gap_seconds,
            ),
            StreamKind.STDERR: spec.new_normalizer(StreamKind.STDERR),
        }
        open_streams = set(normalizers)
        try:
            while open_streams:
                try:
                    kind, text = lines.get(timeout=self.cluster_gap_seconds)
                except queue.Empty:
                    stdout = normalizers[StreamKind.STDOUT]
                    self._handle_entries(
                        process,
                        session,
                        spec,
                        stdout,
                        stdout.poll(time.monotonic()),
                    )
                    continue
                normalizer = normalizers[kind]
                if text is None:
                    open_streams.discard(kind)
                    self._handle_entries(
                        process,
                        session,
                        spec,
                        normalizer,
                        normalizer.flush(len(process.store)),
                    )
                    continue
                line = self._append(process, kind, text)
                self._handle_entries(
                    process,
                    session,
                    spec,
                    normalizer,
                    normalizer.feed(text, line.sequence, now=time.monotonic()),
                )
        except Exception:
            logger.exception("Output pump failed for process %s", process.process_id)
        finally:
            self._finalize(process, session)

    def _handle_entries(  # noqa: PLR0913
        self,
        process: SpawnedProcess,
        session: ExecutionSession,
        spec: AgentSpec,
        normalizer: LogNormalizer,
        entries: list[NormalizedEntry],
    ) -> None:
        if normalizer.session_id and normalizer.session_id != session.agent_session_id:
            session.agent_session_id = normalizer.session_id
        for entry in entries:
            self._append(process, StreamKind.NORMALIZED, entry.to_json())
            with process._lock:  # noqa: SLF001
                process.entries.append(entry)
            safe_record("normalized entry", self.sink.record_entry, process.process_id, entry)
            if entry.action == "message" and entry.metadata.get("role") == "assistant":
                session.add_turn("assistant", entry.content, entry.metadata.get("message_id"))
            if not entry.requires_approval:
                continue
            if not entry.tool_call_id:
                logger.warning(
                    "Approval entry without tool_call_id from process %s at %s; not gated",
                    process.process_id,
                    entry.source_range,
                )
                continue
            self._open_approval(process, spec, entry, entry.tool_call_id)

    def _open_approval(
        self,
        process: SpawnedProcess,
        spec: AgentSpec,
        entry: NormalizedEntry,
        tool_call_id: str,
    ) -> None:
        request = self.gate.request(
            tool_name=entry.tool_name or "unknown",
            tool_input=entry.tool_input,
            tool_call_id=tool_call_id,
            process_id=process.process_id,
        )
        with process._lock:  # noqa: SLF001
            if request.request_id in process.approval_ids:
                return
            process.approval_ids.append(request.request_id)
            process.undelivered_approvals.add(request.request_id)
        self._append(
            process,
            StreamKind.SYSTEM,
            f"approval requested: {request.tool_name} ({request.request_id})",
        )
        threading.Thread(
            target=self._await_approval,
            args=(process, spec, request),
            daemon=True,
            name=f"agent-approval-{request.request_id[:8]}",
        ).start()

    def _await_approval(
        self,
        process: SpawnedProcess,
        spec: AgentSpec,
        request: ApprovalRequest,
    ) -> None:
        status = self.gate.wait(request.request_id)
        try:
            if process.is_active and process.popen.stdin is not None:
                self._write_stdin(process, spec.encode_approval(request, status))
        finally:
            with process._lock:  # noqa: SLF001
                process.undelivered_approvals.discard(request.request_id)
            with process._input_ready:  # noqa: SLF001
                process._input_ready.notify_all()  # noqa: SLF001

    def _finalize(
        self,
        process: SpawnedProcess,
        session: ExecutionSession,
    ) -> None:
        code = process.popen.wait()
        killed = process.cancel_requested.is_set()
        status = ExitStatus(ProcessState.KILLED if killed else ProcessState.EXITED, code)
        self.gate.cancel_for_process(process.process_id, reason=EXITED_REASON)
        self._append(
            process,
            StreamKind.SYSTEM,
            f"process killed (code {code})" if killed else f"process exited with code {code}",
        )
        stdin = process.popen.stdin
        if stdin is not None:
            with process._stdin_lock:  # noqa: SLF001
                try:
                    stdin.close()
                except OSError:
                    logger.debug("stdin already broken for process %s", process.process_id)
        # Exit status is visible before subscribers see end of stream.
        with process._lock:  # noqa: SLF001
            process.state = status.state
            process.exit_status = status
        self.sessions.release(session, process.process_id)
        with process._input_ready:  # noqa: SLF001
            process._input_ready.notify_all()  # noqa: SLF001
        process.store.close()
        logger.info(
            "Process %s finished: state=%s code=%s",
            process.process_id,
            status.state.value,
            code,
        )
        process.completion.set_result(status)

    # -- helpers ---------------------------------------------------------------

    def _append(self, process: SpawnedProcess, kind: StreamKind, text: str) -> LogLine:
        line = process.store.append(kind, text)
        safe_record("log line", self.sink.record_log_line, process.process_id, line)
        return line

    def _write_stdin(self, process: SpawnedProcess, payload: str) -> bool:
        stdin = process.popen.stdin
        if stdin is None:
            return False
        with process._stdin_lock:  # noqa: SLF001
            try:
                stdin.write(payload)
                stdin.flush()
            except (OSError, ValueError):
                logger.warning("Cannot write to stdin of process %s", process.process_id)
                return False
        return True

    def _approval_outstanding(self, process: SpawnedProcess) -> bool:
        with process._lock:  # noqa: SLF001
            if process.undelivered_approvals:
                return True
        return self.gate.has_pending(process.process_id)

    def _process(self, handle: SpawnedProcess | str) -> SpawnedProcess:
        if isinstance(handle, SpawnedProcess):
            return handle
        return self.processes.get(handle)

    def _session_for(self, process: SpawnedProcess) -> ExecutionSession | None:
        try:
            return self.sessions.get(process.session_id)
        except UnknownSessionError:
            return None


def _read_pipe(pipe: IO[str] | None, kind: StreamKind, lines: queue.Queue[_QueueItem]) -> None:
    if pipe is None:
        lines.put((kind, None))
        return
    try:
        for raw in pipe:
            lines.put((kind, raw))
    except (OSError, ValueError):
        logger.debug("Pipe %s closed while reading", kind.value, exc_info=True)
    finally:
        lines.put((kind, None))
        pipe.close()


def _send_signal(popen: subprocess.Popen[str], *, force: bool) -> None:
    if not _USE_PROCESS_GROUP:
        if force:
            popen.kill()
        else:
            popen.terminate()
        return
    os.killpg(popen.pid, signal.SIGKILL if force else signal.SIGTERM)


def _terminate_process(popen: subprocess.Popen[str], grace_seconds: float) -> None:
    try:
        _send_signal(popen, force=False)
    except OSError:
        return
    try:
        popen.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Process pid=%d ignored SIGTERM; sending SIGKILL", popen.pid)
        try:
            _send_signal(popen, force=True)
        except OSError:
            return
        popen.wait(timeout=grace_seconds)
