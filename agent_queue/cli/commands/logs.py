"""Logs command for task log artifacts and the application log."""

import os
import sys
from typing import Optional

import click

from ...exceptions import QueueException


@click.command()
@click.argument("task_id", required=False)
@click.option(
    "--tail", type=int, default=50, help="Number of lines to show (default: 50, 0 for all)"
)
@click.pass_context
def logs(ctx, task_id: Optional[str], tail: int):
    """Print a task's log artifact, or the application log.

    Examples:
      agent-queue logs 3f2a9c1b
      agent-queue logs 3f2a9c1b --tail 0
      agent-queue logs
    """
    cli_ctx = ctx.find_root().obj

    if tail < 0:
        click.echo("Error: tail count cannot be negative", err=True)
        sys.exit(1)

    if task_id is None:
        log_file_path = cli_ctx.config.get_log_file_path()
        if not os.path.exists(log_file_path):
            if not cli_ctx.quiet:
                click.echo("[INFO] No log file found. Run the queue to generate logs.")
            return
        _show_file(log_file_path, tail)
        return

    try:
        task = cli_ctx.queue_state.find_task(task_id)
    except QueueException as exc:
        click.echo(f"Error: {exc.message}", err=True)
        sys.exit(1)

    path = task.log_artifact_path
    if not path or not os.path.exists(path):
        click.echo(f"No log artifact for task {task.id[:8]}")
        return

    if cli_ctx.verbose:
        click.echo(f"# {path}")
    _show_file(path, tail)


def _show_file(path: str, tail: int) -> None:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError as e:
        click.echo(f"Error reading log file: {e}", err=True)
        sys.exit(1)

    if tail > 0 and len(lines) > tail:
        lines = lines[-tail:]
    for line in lines:
        click.echo(line)
