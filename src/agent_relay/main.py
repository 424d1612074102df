"""CLI entrypoint for agent-relay."""

from pathlib import Path

import rich_click as click

from agent_relay import __version__
from agent_relay.config import Settings
from agent_relay.executor.agents import SUPPORTED_AGENTS
from agent_relay.executor.controllers import (
    AgentRunCommand,
    AgentWhichCommand,
    ExecutorCliController,
)
from agent_relay.executor.errors import AgentRelayError
from agent_relay.executor.models import ApprovalRequest

click.rich_click.USE_MARKDOWN = True
EXECUTOR_CONTROLLER = ExecutorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-relay")
def agent_relay() -> None:
    """Supervise coding-agent CLIs with replayable logs and approvals."""

    try:
        settings = Settings.from_env()
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    settings.configure_logging()


@agent_relay.command("run")
@click.option(
    "--agent",
    type=click.Choice(list(SUPPORTED_AGENTS), case_sensitive=False),
    default=None,
    help="Agent to run; defaults to AGENT_RELAY_DEFAULT_AGENT.",
)
@click.option(
    "--variant",
    default=None,
    help="Executor profile variant, e.g. `PLAN` for `AGENT_RELAY_CLAUDE__PLAN_*` settings.",
)
@click.option("--prompt", required=True, help="Instruction handed to the agent.")
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory for the agent process.",
)
@click.option("--model", default=None, help="Model id passed through the agent's model flag.")
@click.option(
    "--full-auto",
    is_flag=True,
    default=False,
    help="Let the agent act without asking for approvals.",
)
@click.option(
    "--extra-param",
    "extra_params",
    multiple=True,
    help="Extra agent CLI argument(s), shell-split. Can be repeated.",
)
@click.option(
    "--auto-approve",
    "approval_policy",
    flag_value="approve",
    help="Approve every tool call the agent asks about.",
)
@click.option(
    "--deny-all",
    "approval_policy",
    flag_value="deny",
    help="Deny every tool call the agent asks about.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=600,
    show_default=True,
    help="Cancel the agent after this many seconds.",
)
@click.option(
    "--raw",
    is_flag=True,
    default=False,
    help="Print raw stdout/stderr instead of normalized entries.",
)
def run(  # noqa: PLR0913
    agent: str | None,
    variant: str | None,
    prompt: str,
    cwd: Path | None,
    model: str | None,
    full_auto: bool,
    extra_params: tuple[str, ...],
    approval_policy: str | None,
    timeout_seconds: int,
    raw: bool,
) -> None:
    """Run one agent turn, streaming its output and resolving approvals.

    Without `--auto-approve` or `--deny-all` each approval is asked interactively.
    """

    try:
        result = EXECUTOR_CONTROLLER.run(
            AgentRunCommand(
                prompt=prompt,
                agent=agent.lower() if agent else None,
                variant=variant,
                cwd=cwd,
                model=model,
                full_auto=full_auto,
                extra_params=extra_params,
                approval_policy=approval_policy or "ask",
                timeout_seconds=timeout_seconds,
                raw=raw,
                confirm=_confirm_approval,
            ),
            emit=click.echo,
        )
    except (AgentRelayError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent run failed.")


@agent_relay.command("which")
@click.option(
    "--agent",
    "agents",
    multiple=True,
    type=click.Choice(list(SUPPORTED_AGENTS), case_sensitive=False),
    help="Agent to resolve. Repeat to check several; defaults to all.",
)
def which(agents: tuple[str, ...]) -> None:
    """Resolve agent executables and print the initial command line."""

    result = EXECUTOR_CONTROLLER.which(
        AgentWhichCommand(agents=tuple(agent.lower() for agent in agents)),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Some agent executables were not found.")


@agent_relay.command("profiles")
def profiles() -> None:
    """List executor profiles (`agent:VARIANT`) and their settings."""

    try:
        lines = EXECUTOR_CONTROLLER.profiles()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _confirm_approval(request: ApprovalRequest) -> bool:
    return click.confirm(
        f"Allow {request.tool_name} with input {request.tool_input!r}?",
        default=False,
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_relay()
