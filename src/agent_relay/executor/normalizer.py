"""Best-effort translation of raw agent output into normalized entries.

A normalizer instance belongs to one stream of one process. It keeps only
the state needed to stitch records back together: the unterminated tail of
the last chunk and any JSON record that spans several lines. Feeding the
same chunks in the same order always yields the same entries.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from agent_relay.executor.models import NormalizedEntry, StreamKind

logger = logging.getLogger(__name__)

NORMALIZER_VERSION = "v2"
DEFAULT_MAX_RECORD_CHARS = 1_000_000
MAX_RECORD_LINES = 2_000
PLAIN_TEXT_CLUSTER_CHARS = 8 * 1024

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_FILE_LOCATION = re.compile(r"(?P<path>[\w./\\-]+\.[A-Za-z0-9]+):(?P<line>\d+)")
_ERROR_PREFIX = re.compile(r"^\s*(?:error|fatal|exception)\b[:\s]", re.IGNORECASE)

RecordMapper = Callable[[dict[str, Any], tuple[int, int]], list[NormalizedEntry]]


class LogNormalizer:
    """Stateful chunk-to-entry translator for one stream of one process.

    Agents with a dedicated mapping speak JSON lines, so a line that fails to
    parse is passed through at once. The generic mapping also accepts records
    pretty-printed over several lines; a pending record is abandoned (passed
    through as text) as soon as a new unindented line parses as a complete
    object on its own.

    With ``cluster_chars`` or ``cluster_gap_seconds`` set, consecutive plain
    text lines on stdout are grouped into one ``message`` entry. A cluster is
    emitted when it reaches ``cluster_chars``, when a structured record or an
    error line follows it, when ``poll``/``feed`` observe an idle gap of
    ``cluster_gap_seconds`` (using the caller's ``now``), or on ``flush``.
    """

    def __init__(  # noqa: PLR0913
        self,
        agent: str,
        *,
        stream: StreamKind = StreamKind.STDOUT,
        max_record_chars: int = DEFAULT_MAX_RECORD_CHARS,
        cluster_chars: int | None = None,
        cluster_gap_seconds: float | None = None,
    ) -> None:
        self.agent = agent.strip().lower()
        self.stream = stream
        self.max_record_chars = max_record_chars
        self.cluster_chars = cluster_chars
        self.cluster_gap_seconds = cluster_gap_seconds
        self.session_id: str | None = None
        self._mapper = _RECORD_MAPPERS.get(self.agent, map_generic_record)
        self.multiline_records = self.agent not in _RECORD_MAPPERS
        self._partial = ""
        self._partial_start: int | None = None
        self._record_lines: list[str] = []
        self._record_start: int | None = None
        self._record_last: int | None = None
        self._cluster: list[str] = []
        self._cluster_range: tuple[int, int] | None = None
        self._cluster_size = 0
        self._last_arrival: float | None = None

    @property
    def clustering(self) -> bool:
        return self.stream == StreamKind.STDOUT and (
            self.cluster_chars is not None or self.cluster_gap_seconds is not None
        )

    def feed(
        self,
        chunk: str,
        sequence: int,
        now: float | None = None,
    ) -> list[NormalizedEntry]:
        """Consume one raw chunk that was stored under ``sequence``.

        ``now`` is the chunk's arrival time in seconds (monotonic clock); it
        only matters for time-gap clustering.
        """

        if not chunk:
            return []
        entries = self.poll(now) if now is not None else []
        if now is not None:
            self._last_arrival = now
        pieces = chunk.split("\n")
        for piece in pieces[:-1]:
            line = self._partial + piece
            first = self._partial_start if self._partial_start is not None else sequence
            self._partial = ""
            self._partial_start = None
            entries.extend(self._consume_line(line.rstrip("\r"), first, sequence))
        tail = pieces[-1]
        if tail:
            if self._partial_start is None:
                self._partial_start = sequence
            self._partial += tail
        return self._track_session(entries)

    def poll(self, now: float) -> list[NormalizedEntry]:
        """Emit the pending text cluster once the stream was idle long enough."""

        if (
            not self._cluster
            or self.cluster_gap_seconds is None
            or self._last_arrival is None
            or now - self._last_arrival < self.cluster_gap_seconds
        ):
            return []
        return self._drain_cluster()

    def flush(self, sequence: int) -> list[NormalizedEntry]:
        """Emit whatever is still buffered at end of stream."""

        entries: list[NormalizedEntry] = []
        if self._partial:
            first = self._partial_start if self._partial_start is not None else sequence
            line = self._partial
            self._partial = ""
            self._partial_start = None
            entries.extend(self._consume_line(line.rstrip("\r"), first, sequence))
        if self._record_lines:
            entries.extend(self._abandon_record(sequence))
        entries.extend(self._drain_cluster())
        return self._track_session(entries)

    def _consume_line(self, line: str, first: int, last: int) -> list[NormalizedEntry]:
        if self._record_lines:
            if _standalone_record(_strip_ansi(line)) is None:
                self._record_lines.append(line)
                self._record_last = last
                return self._try_record(last)
            entries = self._abandon_record(last)
            entries.extend(self._start_record(_strip_ansi(line).strip(), first, last))
            return entries

        stripped = _strip_ansi(line).strip()
        if not stripped:
            return []
        if self.stream == StreamKind.STDOUT and stripped[0] in "{[":
            return self._start_record(stripped, first, last)
        return self._plain(stripped, first, last)

    def _start_record(self, text: str, first: int, last: int) -> list[NormalizedEntry]:
        entries = self._drain_cluster()
        self._record_lines = [text]
        self._record_start = first
        self._record_last = last
        entries.extend(self._try_record(last))
        return entries

    def _try_record(self, last: int) -> list[NormalizedEntry]:
        raw = "\n".join(self._record_lines)
        first = self._record_start if self._record_start is not None else last
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            if (
                self.multiline_records
                and _open_depth(raw) > 0
                and len(raw) < self.max_record_chars
                and len(self._record_lines) < MAX_RECORD_LINES
            ):
                return []
            self._reset_record()
            return self._plain(raw.strip(), first, last)

        self._reset_record()
        if not isinstance(payload, dict):
            return self._plain(raw.strip(), first, last)
        try:
            return self._mapper(payload, (first, last))
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.debug(
                "Record mapper failed for agent=%s at sequence=%d; passing through",
                self.agent,
                first,
                exc_info=True,
            )
            return self._plain(raw.strip(), first, last)

    def _abandon_record(self, sequence: int) -> list[NormalizedEntry]:
        first = self._record_start if self._record_start is not None else sequence
        last = self._record_last if self._record_last is not None else sequence
        raw = "\n".join(self._record_lines)
        self._reset_record()
        logger.debug(
            "Incomplete record for agent=%s at sequences %d-%d; passing through",
            self.agent,
            first,
            last,
        )
        return self._plain(raw.strip(), first, last)

    def _plain(self, text: str, first: int, last: int) -> list[NormalizedEntry]:
        if not text:
            return []
        is_error = self.stream == StreamKind.STDERR or bool(_ERROR_PREFIX.match(text))
        if self.clustering and not is_error:
            return self._add_to_cluster(text, first, last)
        entries = self._drain_cluster()
        entries.append(_text_entry(text, first, last, is_error=is_error))
        return entries

    def _add_to_cluster(self, text: str, first: int, last: int) -> list[NormalizedEntry]:
        self._cluster.append(text)
        self._cluster_size += len(text) + 1
        start = self._cluster_range[0] if self._cluster_range else first
        self._cluster_range = (start, last)
        if self.cluster_chars is not None and self._cluster_size >= self.cluster_chars:
            return self._drain_cluster()
        return []

    def _drain_cluster(self) -> list[NormalizedEntry]:
        if not self._cluster or self._cluster_range is None:
            return []
        first, last = self._cluster_range
        text = "\n".join(self._cluster)
        self._cluster = []
        self._cluster_range = None
        self._cluster_size = 0
        return [_text_entry(text, first, last, is_error=False)]

    def _reset_record(self) -> None:
        self._record_lines = []
        self._record_start = None
        self._record_last = None

    def _track_session(self, entries: list[NormalizedEntry]) -> list[NormalizedEntry]:
        for entry in entries:
            session_id = entry.metadata.get("session_id")
            if isinstance(session_id, str) and session_id:
                self.session_id = session_id
        return entries


def _text_entry(text: str, first: int, last: int, *, is_error: bool) -> NormalizedEntry:
    location = _FILE_LOCATION.search(text)
    return NormalizedEntry(
        action="error" if is_error else "message",
        source_range=(first, last),
        content=text,
        error=text if is_error else None,
        file_path=location.group("path") if location else None,
        line_number=int(location.group("line")) if location else None,
    )


def _standalone_record(line: str) -> dict[str, Any] | None:
    """Parse ``line`` when it is an unindented, complete JSON object."""

    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def map_generic_record(
    payload: dict[str, Any],
    source_range: tuple[int, int],
) -> list[NormalizedEntry]:
    """Map a flat JSON record using common key names."""

    action = _first_str(payload, "action", "type") or "message"
    requires_approval = bool(payload.get("requires_approval")) or action == "approval_request"
    tool_call_id = _first_str(payload, "tool_call_id", "call_id", "id")
    if requires_approval and tool_call_id is None:
        tool_call_id = f"seq-{source_range[0]}"
    metadata: dict[str, Any] = {}
    session_id = _first_str(payload, "session_id", "thread_id", "sessionId")
    if session_id:
        metadata["session_id"] = session_id
    role = _first_str(payload, "role")
    if role:
        metadata["role"] = role
    message_id = _first_str(payload, "message_id", "uuid")
    if message_id:
        metadata["message_id"] = message_id
    return [
        NormalizedEntry(
            action="tool_call" if action == "approval_request" else action,
            source_range=source_range,
            content=_first_str(payload, "content", "message", "text") or "",
            file_path=_first_str(payload, "path", "file", "file_path"),
            line_number=_first_int(payload, "line", "line_number"),
            error=_first_str(payload, "error"),
            tool_name=_first_str(payload, "tool_name", "tool", "name"),
            tool_input=_first_present(payload, "tool_input", "input", "arguments"),
            tool_call_id=tool_call_id,
            requires_approval=requires_approval,
            metadata=metadata,
        ),
    ]


_CLAUDE_EDIT_TOOLS = frozenset({"Edit", "MultiEdit", "Write", "NotebookEdit"})
_CLAUDE_READ_TOOLS = frozenset({"Read"})
_CLAUDE_COMMAND_TOOLS = frozenset({"Bash"})
_CLAUDE_SEARCH_TOOLS = frozenset({"Grep", "Glob", "WebSearch"})


def map_claude_record(  # noqa: C901, PLR0911
    payload: dict[str, Any],
    source_range: tuple[int, int],
) -> list[NormalizedEntry]:
    """Map one Claude Code ``stream-json`` record."""

    record_type = payload.get("type")
    session_metadata = _session_metadata(payload.get("session_id"))

    if record_type == "system":
        if payload.get("subtype") != "init":
            return []
        model = _first_str(payload, "model") or ""
        return [
            NormalizedEntry(
                action="session",
                source_range=source_range,
                content=f"model={model}" if model else "",
                metadata=session_metadata,
            ),
        ]

    if record_type == "assistant":
        message = payload.get("message")
        if not isinstance(message, dict):
            return []
        message_id = _first_str(payload, "uuid") or _first_str(message, "id")
        entries: list[NormalizedEntry] = []
        for block in _list_of_dicts(message.get("content")):
            entry = _claude_content_block(block, source_range, message_id)
            if entry is not None:
                entries.append(entry)
        return entries

    if record_type == "user":
        message = payload.get("message")
        if not isinstance(message, dict):
            return []
        entries = []
        for block in _list_of_dicts(message.get("content")):
            if block.get("type") != "tool_result":
                continue
            text = _stringify(block.get("content"))
            entries.append(
                NormalizedEntry(
                    action="tool_result",
                    source_range=source_range,
                    content=text,
                    error=text if block.get("is_error") else None,
                    tool_call_id=_first_str(block, "tool_use_id"),
                ),
            )
        return entries

    if record_type == "result":
        text = _stringify(payload.get("result"))
        is_error = bool(payload.get("is_error"))
        return [
            NormalizedEntry(
                action="result",
                source_range=source_range,
                content=text,
                error=text or str(payload.get("subtype", "error")) if is_error else None,
                metadata=session_metadata,
            ),
        ]

    if record_type == "control_request":
        request = payload.get("request")
        request_id = _first_str(payload, "request_id")
        if not isinstance(request, dict) or request.get("subtype") != "can_use_tool":
            return []
        if request_id is None:
            return []
        tool_name = _first_str(request, "tool_name") or "unknown"
        tool_input = request.get("input")
        return [
            NormalizedEntry(
                action="tool_call",
                source_range=source_range,
                content=f"{tool_name} requires approval",
                file_path=_input_path(tool_input),
                tool_name=tool_name,
                tool_input=tool_input,
                tool_call_id=request_id,
                requires_approval=True,
                metadata={"tool_use_id": request.get("tool_use_id")},
            ),
        ]

    return []


def _claude_content_block(
    block: dict[str, Any],
    source_range: tuple[int, int],
    message_id: str | None,
) -> NormalizedEntry | None:
    block_type = block.get("type")
    if block_type == "text":
        metadata: dict[str, Any] = {"role": "assistant"}
        if message_id:
            metadata["message_id"] = message_id
        return NormalizedEntry(
            action="message",
            source_range=source_range,
            content=_stringify(block.get("text")),
            metadata=metadata,
        )
    if block_type == "thinking":
        return NormalizedEntry(
            action="thinking",
            source_range=source_range,
            content=_stringify(block.get("thinking")),
        )
    if block_type != "tool_use":
        return None

    tool_name = _first_str(block, "name") or "unknown"
    tool_input = block.get("input")
    if tool_name in _CLAUDE_EDIT_TOOLS:
        action = "file_edit"
    elif tool_name in _CLAUDE_READ_TOOLS:
        action = "file_read"
    elif tool_name in _CLAUDE_COMMAND_TOOLS:
        action = "command_run"
    elif tool_name in _CLAUDE_SEARCH_TOOLS:
        action = "search"
    else:
        action = "tool_call"
    content = ""
    if isinstance(tool_input, dict) and action == "command_run":
        content = _stringify(tool_input.get("command"))
    return NormalizedEntry(
        action=action,
        source_range=source_range,
        content=content,
        file_path=_input_path(tool_input),
        tool_name=tool_name,
        tool_input=tool_input,
        tool_call_id=_first_str(block, "id"),
    )


def map_codex_record(  # noqa: C901, PLR0911
    payload: dict[str, Any],
    source_range: tuple[int, int],
) -> list[NormalizedEntry]:
    """Map one ``codex exec --json`` event."""

    event_type = payload.get("type")

    if event_type == "thread.started":
        return [
            NormalizedEntry(
                action="session",
                source_range=source_range,
                metadata=_session_metadata(payload.get("thread_id")),
            ),
        ]

    if event_type in {"turn.failed", "error"}:
        error = payload.get("error")
        message = _first_str(error, "message") if isinstance(error, dict) else None
        message = message or _first_str(payload, "message") or "codex error"
        return [
            NormalizedEntry(
                action="error",
                source_range=source_range,
                content=message,
                error=message,
            ),
        ]

    if event_type == "turn.completed":
        usage = payload.get("usage")
        return [
            NormalizedEntry(
                action="usage",
                source_range=source_range,
                metadata={"usage": usage} if isinstance(usage, dict) else {},
            ),
        ]

    if event_type in {"exec_approval_request", "apply_patch_approval_request"}:
        call_id = _first_str(payload, "call_id", "id")
        if call_id is None:
            return []
        is_patch = event_type == "apply_patch_approval_request"
        tool_input: Any = payload.get("changes") if is_patch else payload.get("command")
        command_text = _stringify(tool_input) if not is_patch else ""
        return [
            NormalizedEntry(
                action="tool_call",
                source_range=source_range,
                content=command_text or _first_str(payload, "reason") or "",
                file_path=_first_change_path(tool_input) if is_patch else None,
                tool_name="apply_patch" if is_patch else "shell",
                tool_input=tool_input,
                tool_call_id=call_id,
                requires_approval=True,
            ),
        ]

    if event_type != "item.completed":
        return []

    item = payload.get("item")
    if not isinstance(item, dict):
        return []
    item_type = item.get("type")
    item_id = _first_str(item, "id")

    if item_type == "agent_message":
        metadata: dict[str, Any] = {"role": "assistant"}
        if item_id:
            metadata["message_id"] = item_id
        return [
            NormalizedEntry(
                action="message",
                source_range=source_range,
                content=_stringify(item.get("text")),
                metadata=metadata,
            ),
        ]
    if item_type == "reasoning":
        return [
            NormalizedEntry(
                action="thinking",
                source_range=source_range,
                content=_stringify(item.get("text")),
            ),
        ]
    if item_type == "command_execution":
        exit_code = item.get("exit_code")
        failed = isinstance(exit_code, int) and exit_code != 0
        return [
            NormalizedEntry(
                action="command_run",
                source_range=source_range,
                content=_stringify(item.get("command")),
                error=_stringify(item.get("aggregated_output")) or "command failed"
                if failed
                else None,
                tool_call_id=item_id,
                metadata={"exit_code": exit_code} if exit_code is not None else {},
            ),
        ]
    if item_type == "file_change":
        return [
            NormalizedEntry(
                action="file_edit",
                source_range=source_range,
                file_path=_first_str(change, "path"),
                content=_first_str(change, "kind") or "",
                tool_call_id=item_id,
            )
            for change in _list_of_dicts(item.get("changes"))
        ]
    if item_type == "mcp_tool_call":
        server = _first_str(item, "server") or ""
        tool = _first_str(item, "tool") or "unknown"
        return [
            NormalizedEntry(
                action="tool_call",
                source_range=source_range,
                tool_name=f"{server}.{tool}" if server else tool,
                tool_input=item.get("arguments"),
                tool_call_id=item_id,
            ),
        ]
    if item_type == "web_search":
        return [
            NormalizedEntry(
                action="search",
                source_range=source_range,
                content=_stringify(item.get("query")),
            ),
        ]
    return []


def map_gemini_record(  # noqa: PLR0911
    payload: dict[str, Any],
    source_range: tuple[int, int],
) -> list[NormalizedEntry]:
    """Map one Gemini CLI ``stream-json`` record."""

    record_type = payload.get("type")
    if record_type == "init":
        return [
            NormalizedEntry(
                action="session",
                source_range=source_range,
                content=f"model={payload['model']}" if payload.get("model") else "",
                metadata=_session_metadata(payload.get("session_id")),
            ),
        ]
    if record_type == "message":
        if payload.get("role") != "assistant":
            return []
        return [
            NormalizedEntry(
                action="message",
                source_range=source_range,
                content=_stringify(payload.get("content")),
                metadata={"role": "assistant"},
            ),
        ]
    if record_type == "tool_use":
        tool_input = payload.get("parameters")
        return [
            NormalizedEntry(
                action="tool_call",
                source_range=source_range,
                file_path=_input_path(tool_input),
                tool_name=_first_str(payload, "tool_name") or "unknown",
                tool_input=tool_input,
                tool_call_id=_first_str(payload, "tool_id"),
            ),
        ]
    if record_type == "tool_result":
        output = _stringify(payload.get("output"))
        return [
            NormalizedEntry(
                action="tool_result",
                source_range=source_range,
                content=output,
                error=output or "tool failed" if payload.get("status") == "error" else None,
                tool_call_id=_first_str(payload, "tool_id"),
            ),
        ]
    if record_type == "error":
        message = _first_str(payload, "message") or "gemini error"
        return [
            NormalizedEntry(
                action="error",
                source_range=source_range,
                content=message,
                error=message,
            ),
        ]
    if record_type == "result":
        stats = payload.get("stats")
        return [
            NormalizedEntry(
                action="result",
                source_range=source_range,
                content=_first_str(payload, "status") or "",
                metadata={"stats": stats} if isinstance(stats, dict) else {},
            ),
        ]
    return []


_RECORD_MAPPERS: dict[str, RecordMapper] = {
    "claude": map_claude_record,
    "codex": map_codex_record,
    "gemini": map_gemini_record,
}


def _open_depth(text: str) -> int:
    """Count unclosed braces/brackets outside of JSON strings."""

    depth = 0
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
    return depth


def _strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)


def _session_metadata(value: object) -> dict[str, Any]:
    if isinstance(value, str) and value.strip():
        return {"session_id": value.strip()}
    return {}


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _first_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
        if isinstance(value, int) and not isinstance(value, bool) and key.endswith("id"):
            return str(value)
    return None


def _first_int(payload: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


def _list_of_dicts(value: object) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _input_path(tool_input: object) -> str | None:
    if not isinstance(tool_input, dict):
        return None
    return _first_str(tool_input, "file_path", "path", "notebook_path", "absolute_path")


def _first_change_path(changes: object) -> str | None:
    if isinstance(changes, dict):
        for path in changes:
            if isinstance(path, str):
                return path
    for change in _list_of_dicts(changes):
        path = _first_str(change, "path")
        if path:
            return path
    return None


def _stringify(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return " ".join(value)
    if isinstance(value, list):
        texts = [item.get("text") for item in _list_of_dicts(value)]
        joined = "\n".join(text for text in texts if isinstance(text, str))
        if joined:
            return joined
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
