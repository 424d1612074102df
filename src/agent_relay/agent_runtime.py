"""Prefect task for running one supervised agent turn inside a flow."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field

from prefect import task
from prefect.cache_policies import NO_CACHE

from agent_relay.executor.command import AgentOverrides
from agent_relay.executor.errors import SpawnError
from agent_relay.executor.models import ExecutionSession, ExitStatus, NormalizedEntry
from agent_relay.executor.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

_STEP_RETRIES = 2
_STEP_RETRY_DELAY = 30


@dataclass(slots=True)
class AgentTurnResult:
    """Outcome of one agent turn."""

    session_id: str
    process_id: str
    agent: str
    exit_status: ExitStatus
    agent_session_id: str | None
    elapsed_seconds: float
    timed_out: bool = False
    entries: list[NormalizedEntry] = field(default_factory=list)

    @property
    def final_message(self) -> str:
        """Last assistant message text, or an empty string."""

        for entry in reversed(self.entries):
            if entry.action == "message" and entry.metadata.get("role") == "assistant":
                return entry.content
        return ""


def _retry_transient_spawn(_task: object, _task_run: object, state: object) -> bool:
    try:
        state.result()  # type: ignore[attr-defined]
    except SpawnError as error:
        return error.transient
    except Exception:  # noqa: BLE001
        return False
    return False


@task(
    retries=_STEP_RETRIES,
    retry_delay_seconds=_STEP_RETRY_DELAY,
    retry_condition_fn=_retry_transient_spawn,
    cache_policy=NO_CACHE,
)
def run_agent_turn(  # noqa: PLR0913
    *,
    supervisor: ProcessSupervisor,
    session: ExecutionSession,
    prompt: str,
    follow_up: bool = False,
    prior_message_id: str | None = None,
    cwd: str | os.PathLike[str] | None = None,
    overrides: AgentOverrides | None = None,
    timeout_seconds: float = 600,
    raise_on_failure: bool = True,
) -> AgentTurnResult:
    """Spawn (or follow up) ``session`` and wait for the agent to finish.

    The process is cancelled when ``timeout_seconds`` elapse. With
    ``raise_on_failure`` a timeout or non-zero exit raises ``RuntimeError``
    so Prefect marks the task failed.
    """

    step_start = time.monotonic()
    if follow_up:
        process = supervisor.spawn_follow_up(
            session,
            prompt,
            prior_message_id,
            cwd=cwd,
            overrides=overrides,
        )
    else:
        process = supervisor.spawn(session, prompt, cwd=cwd, overrides=overrides)

    status = supervisor.wait(process, timeout=timeout_seconds)
    timed_out = status is None
    if timed_out:
        logger.warning(
            "Agent turn timed out after %.1fs: session=%s process=%s",
            timeout_seconds,
            session.session_id,
            process.process_id,
        )
        status = supervisor.cancel(process)
    elapsed = time.monotonic() - step_start

    if status is None:
        raise RuntimeError(f"Agent process {process.process_id} did not stop after cancellation")
    if raise_on_failure and timed_out:
        raise RuntimeError(f"Agent timed out after {elapsed:.1f}s for agent={session.agent}")
    if raise_on_failure and not status.success:
        raise RuntimeError(
            f"Agent {status.state.value} with exit code {status.code} after {elapsed:.1f}s "
            f"for agent={session.agent}",
        )

    logger.info(
        "Agent turn completed: agent=%s session=%s process=%s elapsed=%.1fs",
        session.agent,
        session.session_id,
        process.process_id,
        elapsed,
    )
    return AgentTurnResult(
        session_id=session.session_id,
        process_id=process.process_id,
        agent=session.agent,
        exit_status=status,
        agent_session_id=session.agent_session_id,
        elapsed_seconds=elapsed,
        timed_out=timed_out,
        entries=process.normalized_entries(),
    )
