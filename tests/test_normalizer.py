from __future__ import annotations

import json

import allure

from agent_relay.executor.models import StreamKind
from agent_relay.executor.normalizer import LogNormalizer

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Log Normalization"),
]


def _feed_lines(normalizer: LogNormalizer, records: list[dict[str, object]]):
    entries = []
    for sequence, record in enumerate(records, start=1):
        entries.extend(normalizer.feed(json.dumps(record) + "\n", sequence))
    return entries


def test_split_json_record_yields_exactly_one_entry() -> None:
    normalizer = LogNormalizer("X")

    first = normalizer.feed('{"act', 1)
    second = normalizer.feed('ion":"edit"}\n', 2)

    assert first == []
    assert len(second) == 1
    assert second[0].action == "edit"
    assert second[0].source_range == (1, 2)
    assert normalizer.flush(2) == []


def test_multi_line_record_is_buffered_until_balanced() -> None:
    normalizer = LogNormalizer("generic")

    assert normalizer.feed('{"type": "file_edit",\n', 1) == []
    assert normalizer.feed(' "path": "src/app.py",\n', 2) == []
    entries = normalizer.feed(' "line": 12}\n', 3)

    assert len(entries) == 1
    assert entries[0].action == "file_edit"
    assert entries[0].file_path == "src/app.py"
    assert entries[0].line_number == 12
    assert entries[0].source_range == (1, 3)


def test_same_chunks_produce_same_entries() -> None:
    chunks = ['{"type":"message","content":"hi"}\nplain ', "text\n", "error: boom\n"]

    def _run():
        normalizer = LogNormalizer("generic")
        entries = []
        for sequence, chunk in enumerate(chunks, start=1):
            entries.extend(normalizer.feed(chunk, sequence))
        return entries

    assert _run() == _run()


def test_unparseable_and_blank_lines_never_raise() -> None:
    normalizer = LogNormalizer("generic")

    entries = normalizer.feed("\n   \n{not json at all}\nsee src/main.rs:42 for details\n", 1)

    assert [entry.action for entry in entries] == ["message", "message"]
    assert entries[0].content == "{not json at all}"
    assert entries[1].file_path == "src/main.rs"
    assert entries[1].line_number == 42


def test_unterminated_record_is_flushed_as_plain_message() -> None:
    normalizer = LogNormalizer("generic")

    assert normalizer.feed('{"type": "message",\n', 1) == []
    entries = normalizer.flush(1)

    assert len(entries) == 1
    assert entries[0].action == "message"
    assert entries[0].content == '{"type": "message",'


def test_stderr_lines_become_errors_with_ansi_stripped() -> None:
    normalizer = LogNormalizer("claude", stream=StreamKind.STDERR)

    entries = normalizer.feed("\x1b[31mpermission denied\x1b[0m\n", 4)

    assert len(entries) == 1
    assert entries[0].action == "error"
    assert entries[0].error == "permission denied"
    assert entries[0].source_range == (4, 4)


def test_generic_approval_request_requires_approval() -> None:
    normalizer = LogNormalizer("echo")

    entries = _feed_lines(
        normalizer,
        [
            {"type": "session", "session_id": "abc"},
            {"type": "approval_request", "tool_name": "Bash", "tool_input": {"command": "ls"}},
        ],
    )

    assert normalizer.session_id == "abc"
    approval = entries[1]
    assert approval.action == "tool_call"
    assert approval.requires_approval
    assert approval.tool_call_id == "seq-2"
    assert approval.tool_input == {"command": "ls"}


def test_claude_stream_json_mapping() -> None:
    normalizer = LogNormalizer("claude")

    entries = _feed_lines(
        normalizer,
        [
            {"type": "system", "subtype": "init", "session_id": "sess-1", "model": "opus"},
            {
                "type": "assistant",
                "uuid": "msg-1",
                "message": {
                    "content": [
                        {"type": "text", "text": "Editing now"},
                        {
                            "type": "tool_use",
                            "id": "toolu_1",
                            "name": "Edit",
                            "input": {"file_path": "a.py"},
                        },
                        {
                            "type": "tool_use",
                            "id": "toolu_2",
                            "name": "Bash",
                            "input": {"command": "pytest"},
                        },
                    ],
                },
            },
            {
                "type": "control_request",
                "request_id": "req-9",
                "request": {"subtype": "can_use_tool", "tool_name": "Bash", "input": {}},
            },
            {"type": "result", "result": "All done", "session_id": "sess-1"},
        ],
    )

    assert [entry.action for entry in entries] == [
        "session",
        "message",
        "file_edit",
        "command_run",
        "tool_call",
        "result",
    ]
    assert normalizer.session_id == "sess-1"
    assert entries[1].metadata == {"role": "assistant", "message_id": "msg-1"}
    assert entries[2].file_path == "a.py"
    assert entries[3].content == "pytest"
    assert entries[4].requires_approval
    assert entries[4].tool_call_id == "req-9"
    assert entries[5].content == "All done"


def test_codex_json_mapping() -> None:
    normalizer = LogNormalizer("codex")

    entries = _feed_lines(
        normalizer,
        [
            {"type": "thread.started", "thread_id": "thread-7"},
            {"type": "item.completed", "item": {"id": "i1", "type": "agent_message", "text": "hi"}},
            {
                "type": "item.completed",
                "item": {
                    "id": "i2",
                    "type": "command_execution",
                    "command": "make test",
                    "exit_code": 2,
                    "aggregated_output": "failed",
                },
            },
            {
                "type": "item.completed",
                "item": {"id": "i3", "type": "file_change", "changes": [{"path": "x.py"}]},
            },
            {"type": "exec_approval_request", "call_id": "c-1", "command": ["rm", "-rf", "build"]},
            {"type": "turn.failed", "error": {"message": "quota"}},
        ],
    )

    assert normalizer.session_id == "thread-7"
    assert [entry.action for entry in entries] == [
        "session",
        "message",
        "command_run",
        "file_edit",
        "tool_call",
        "error",
    ]
    assert entries[2].error == "failed"
    assert entries[3].file_path == "x.py"
    assert entries[4].requires_approval
    assert entries[4].content == "rm -rf build"
    assert entries[5].error == "quota"


def test_gemini_stream_json_mapping() -> None:
    normalizer = LogNormalizer("gemini")

    entries = _feed_lines(
        normalizer,
        [
            {"type": "init", "session_id": "g-1", "model": "gemini-2.5-pro"},
            {"type": "message", "role": "user", "content": "ignored"},
            {"type": "message", "role": "assistant", "content": "Sure"},
            {
                "type": "tool_use",
                "tool_name": "read_file",
                "tool_id": "t1",
                "parameters": {"absolute_path": "/tmp/a"},
            },
            {"type": "tool_result", "tool_id": "t1", "status": "error", "output": "missing"},
        ],
    )

    assert normalizer.session_id == "g-1"
    assert [entry.action for entry in entries] == ["session", "message", "tool_call", "tool_result"]
    assert entries[2].file_path == "/tmp/a"
    assert entries[3].error == "missing"


def test_unexpected_record_shapes_are_skipped_or_passed_through() -> None:
    normalizer = LogNormalizer("claude")

    entries = normalizer.feed('{"type": "assistant", "message": {"content": "oops"}}\n', 1)

    assert entries == []
    entries = normalizer.feed("[1, 2, 3]\n", 2)
    assert len(entries) == 1
    assert entries[0].action == "message"
    assert entries[0].content == "[1, 2, 3]"


def test_truncated_codex_line_does_not_hide_later_approval() -> None:
    normalizer = LogNormalizer("codex")

    entries = normalizer.feed(
        '{"type":"item.completed","item":{"id":"i1","type":"agent_message","text":"cut\n',
        1,
    )
    entries += _feed_lines(
        normalizer,
        [
            {"type": "exec_approval_request", "call_id": "c-9", "command": ["make", "deploy"]},
            {"type": "turn.completed", "usage": {"input_tokens": 3}},
        ],
    )
    entries += normalizer.flush(3)

    assert [entry.action for entry in entries] == ["message", "tool_call", "usage"]
    assert entries[0].content.startswith('{"type":"item.completed"')
    assert entries[0].source_range == (1, 1)
    assert entries[1].requires_approval
    assert entries[1].tool_call_id == "c-9"


def test_pending_generic_record_gives_way_to_complete_record() -> None:
    normalizer = LogNormalizer("generic")

    assert normalizer.feed('{"type": "file_edit",\n', 1) == []
    entries = normalizer.feed(
        '{"type": "approval_request", "tool_call_id": "t-1", "tool_name": "Bash"}\n',
        2,
    )

    assert [entry.action for entry in entries] == ["message", "tool_call"]
    assert entries[0].content == '{"type": "file_edit",'
    assert entries[0].source_range == (1, 1)
    assert entries[1].requires_approval
    assert entries[1].source_range == (2, 2)


def test_plain_text_clusters_until_size_threshold() -> None:
    normalizer = LogNormalizer("generic", cluster_chars=10)

    assert normalizer.feed("alpha\n", 1) == []
    entries = normalizer.feed("beta\ngamma\n", 2)

    assert len(entries) == 1
    assert entries[0].action == "message"
    assert entries[0].content == "alpha\nbeta"
    assert entries[0].source_range == (1, 2)
    remaining = normalizer.flush(2)
    assert [entry.content for entry in remaining] == ["gamma"]


def test_plain_text_cluster_breaks_on_record_and_error_lines() -> None:
    normalizer = LogNormalizer("generic", cluster_chars=1024)

    entries = normalizer.feed("compiling\nlinking\n", 1)
    entries += normalizer.feed('{"type": "message", "content": "done"}\n', 2)
    entries += normalizer.feed("more output\nerror: disk full\n", 3)

    assert [(entry.action, entry.content) for entry in entries] == [
        ("message", "compiling\nlinking"),
        ("message", "done"),
        ("message", "more output"),
        ("error", "error: disk full"),
    ]


def test_plain_text_cluster_is_emitted_after_idle_gap() -> None:
    normalizer = LogNormalizer("generic", cluster_gap_seconds=1.0)

    assert normalizer.feed("first\n", 1, now=10.0) == []
    assert normalizer.feed("second\n", 2, now=10.5) == []
    assert normalizer.poll(11.2) == []

    entries = normalizer.poll(11.6)
    assert [entry.content for entry in entries] == ["first\nsecond"]
    assert entries[0].source_range == (1, 2)

    assert normalizer.feed("third\n", 3, now=20.0) == []
    late = normalizer.feed("fourth\n", 4, now=25.0)
    assert [entry.content for entry in late] == ["third"]
    assert [entry.content for entry in normalizer.flush(4)] == ["fourth"]


def test_stderr_is_never_clustered() -> None:
    normalizer = LogNormalizer("generic", stream=StreamKind.STDERR, cluster_chars=1024)

    entries = normalizer.feed("warn one\nwarn two\n", 1)

    assert [entry.action for entry in entries] == ["error", "error"]
