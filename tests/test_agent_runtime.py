from __future__ import annotations

import allure
import pytest

from agent_relay.agent_runtime import AgentTurnResult, _retry_transient_spawn, run_agent_turn
from agent_relay.executor.command import AgentOverrides
from agent_relay.executor.errors import SpawnError
from agent_relay.executor.models import ProcessState

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Prefect Task"),
]


def test_run_agent_turn_returns_final_message(supervisor) -> None:
    session = supervisor.create_session("echo")

    result = run_agent_turn.fn(supervisor=supervisor, session=session, prompt="summarize")

    assert isinstance(result, AgentTurnResult)
    assert result.exit_status.success
    assert result.final_message == "echo: summarize"
    assert result.agent == "echo"
    assert result.agent_session_id == session.agent_session_id
    assert not result.timed_out


def test_run_agent_turn_follow_up_resumes_session(supervisor) -> None:
    session = supervisor.create_session("echo")
    first = run_agent_turn.fn(supervisor=supervisor, session=session, prompt="one")

    second = run_agent_turn.fn(
        supervisor=supervisor,
        session=session,
        prompt="two",
        follow_up=True,
    )

    assert second.agent_session_id == first.agent_session_id
    assert second.process_id != first.process_id
    assert [turn.content for turn in session.turns] == ["one", "echo: one", "two", "echo: two"]


def test_run_agent_turn_timeout_cancels_process(supervisor) -> None:
    session = supervisor.create_session("echo")

    result = run_agent_turn.fn(
        supervisor=supervisor,
        session=session,
        prompt="slow",
        overrides=AgentOverrides(extra_params=("--sleep", "30")),
        timeout_seconds=0.5,
        raise_on_failure=False,
    )

    assert result.timed_out
    assert result.exit_status.state == ProcessState.KILLED
    assert session.active_process_id is None


def test_run_agent_turn_raises_on_timeout(supervisor) -> None:
    session = supervisor.create_session("echo")

    with pytest.raises(RuntimeError, match="timed out"):
        run_agent_turn.fn(
            supervisor=supervisor,
            session=session,
            prompt="slow",
            overrides=AgentOverrides(extra_params=("--sleep", "30")),
            timeout_seconds=0.5,
        )


def test_run_agent_turn_raises_on_non_zero_exit(supervisor) -> None:
    session = supervisor.create_session("echo")

    with pytest.raises(RuntimeError, match="exit code 5"):
        run_agent_turn.fn(
            supervisor=supervisor,
            session=session,
            prompt="fail",
            overrides=AgentOverrides(extra_params=("--exit-code", "5")),
        )


def test_retry_condition_only_retries_transient_spawn_errors() -> None:
    class _State:
        def __init__(self, error: Exception) -> None:
            self._error = error

        def result(self) -> None:
            raise self._error

    assert _retry_transient_spawn(None, None, _State(SpawnError("busy", transient=True)))
    assert not _retry_transient_spawn(None, None, _State(SpawnError("denied", transient=False)))
    assert not _retry_transient_spawn(None, None, _State(RuntimeError("boom")))
