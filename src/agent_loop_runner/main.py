"""CLI entrypoint for agent-loop-runner."""

import logging
from pathlib import Path

import rich_click as click

from agent_loop_runner import __version__
from agent_loop_runner.orchestrator.controllers import (
    ComposePromptCommand,
    ParseStatusCommand,
    RunCommand,
    RunnerCliController,
)

click.rich_click.USE_MARKDOWN = True
RUNNER_CONTROLLER = RunnerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-loop-runner")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logger level.",
)
def agent_loop_runner(log_level: str) -> None:
    """Run batches of external agent tasks, one URL per job."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_loop_runner.command("run")
@click.option("--url", "urls", multiple=True, help="Target URL. Can be repeated.")
@click.option(
    "--pairs-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help='JSON list of `{"url": ..., "prompt": ...}` objects.',
)
@click.option(
    "--max-loops",
    type=click.IntRange(min=1, max=20),
    default=None,
    help="Attempts per URL. Defaults to AGENT_LOOP_MAX_LOOPS_PER_URL.",
)
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Shared workspace root. Defaults to AGENT_LOOP_WORKSPACE_ROOT or cwd.",
)
@click.option("--agent", default=None, help="Agent id used to pick the command template.")
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Per-job wait budget; 0 waits forever.",
)
@click.option(
    "--worktree/--no-worktree",
    default=None,
    help="Run each job in an isolated git worktree.",
)
def run(  # noqa: PLR0913
    urls: tuple[str, ...],
    pairs_file: Path | None,
    max_loops: int | None,
    workspace: Path | None,
    agent: str | None,
    timeout_seconds: float | None,
    worktree: bool | None,
) -> None:
    """Run every URL through the attempt loop, one job at a time."""

    try:
        result = RUNNER_CONTROLLER.run(
            RunCommand(
                urls=urls,
                pairs_file=pairs_file,
                max_loops=max_loops,
                workspace=workspace,
                agent=agent,
                timeout_seconds=timeout_seconds,
                worktree=worktree,
            ),
            on_line=click.echo,
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Not every job finished as Done.")


@agent_loop_runner.command("parse-status")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
def parse_status(path: Path) -> None:
    """Parse an agent status artifact and print its fields."""

    result = RUNNER_CONTROLLER.parse_status(ParseStatusCommand(path=path))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Status artifact is missing or incomplete.")


@agent_loop_runner.command("compose-prompt")
@click.option("--url", required=True, help="Target URL.")
@click.option("--prompt", default="", help="Per-job prompt override (front matter is stripped).")
@click.option("--run-id", default="preview", show_default=True)
@click.option("--item", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--attempt", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--max-loops", type=click.IntRange(min=1, max=20), default=None)
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace root used to resolve the status file path.",
)
def compose_prompt(  # noqa: PLR0913
    url: str,
    prompt: str,
    run_id: str,
    item: int,
    attempt: int,
    max_loops: int | None,
    workspace: Path | None,
) -> None:
    """Render the prompt a job would receive, without dispatching it."""

    try:
        lines = RUNNER_CONTROLLER.compose_prompt(
            ComposePromptCommand(
                url=url,
                prompt=prompt,
                run_id=run_id,
                item=item,
                attempt=attempt,
                max_loops=max_loops,
                workspace=workspace,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_loop_runner()
