"""Local demo agent speaking the generic JSON-lines protocol.

Used by supervisor integration tests and the ``which``/``run`` smoke paths.
It echoes the prompt as an assistant message and can optionally ask for a
tool approval, read further instructions from stdin, write to stderr,
sleep (to exercise cancellation) and exit with a chosen code.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from uuid import uuid4


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def _read_approval(tool_call_id: str) -> dict[str, object] | None:
    for raw in sys.stdin:
        line = raw.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if (
            isinstance(payload, dict)
            and payload.get("type") == "approval_response"
            and payload.get("tool_call_id") == tool_call_id
        ):
            return payload
    return None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="echo-agent")
    parser.add_argument("--prompt", default="")
    parser.add_argument("--resume", default=None)
    parser.add_argument("--rewind-to", default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("--full-auto", action="store_true")
    parser.add_argument("--request-approval", metavar="TOOL", default=None)
    parser.add_argument("--interactive", action="store_true")
    parser.add_argument("--stderr", default=None)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    return parser


def main(argv: list[str] | None = None) -> int:  # noqa: C901
    """Run the deterministic echo conversation."""

    args = _build_parser().parse_args(argv)
    session_id = args.resume or f"echo-{uuid4()}"
    _emit(
        {
            "type": "session",
            "session_id": session_id,
            "content": f"model={args.model or 'default'}",
        },
    )
    if args.rewind_to:
        _emit({"type": "message", "role": "system", "content": f"rewound to {args.rewind_to}"})

    process_id = os.getenv("AGENT_RELAY_PROCESS_ID", "")
    _emit(
        {
            "type": "message",
            "role": "assistant",
            "content": f"echo: {args.prompt}",
            "message_id": f"msg-{uuid4()}",
        },
    )
    if args.stderr:
        sys.stderr.write(args.stderr + "\n")
        sys.stderr.flush()

    if args.request_approval:
        tool_call_id = f"call-{process_id or 'local'}-1"
        if args.full_auto:
            _emit({"type": "command_run", "tool_name": args.request_approval, "content": "auto"})
        else:
            _emit(
                {
                    "type": "approval_request",
                    "tool_name": args.request_approval,
                    "tool_input": {"command": args.prompt},
                    "tool_call_id": tool_call_id,
                },
            )
            response = _read_approval(tool_call_id)
            if response is None:
                _emit({"type": "error", "error": "approval channel closed"})
                return 2
            if response.get("status") == "approved":
                _emit(
                    {
                        "type": "command_run",
                        "tool_name": args.request_approval,
                        "tool_call_id": tool_call_id,
                        "content": f"ran {args.request_approval}",
                    },
                )
            else:
                reason = response.get("reason") or response.get("status")
                _emit({"type": "error", "error": f"tool call rejected: {reason}"})

    if args.interactive:
        for raw in sys.stdin:
            instruction = raw.strip()
            if not instruction:
                continue
            if instruction == "exit":
                break
            _emit({"type": "message", "role": "assistant", "content": f"echo: {instruction}"})

    if args.sleep > 0:
        time.sleep(args.sleep)

    _emit({"type": "result", "content": "done", "session_id": session_id})
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
