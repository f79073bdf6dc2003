"""Main CLI entry point for the agent task queue.

Provides a command-line interface using the Click framework for managing
queued agent tasks, running the queue in the foreground and inspecting
task logs.
"""
import json
import sys
from typing import Optional

import click

from .. import __version__
from ..exceptions import QueueException
from ..lib.run_lock import RunLock
from ..models.system_configuration import SystemConfiguration
from ..services.cli_transport import resolve_cli_path
from ..services.config_manager import ConfigManager
from ..services.queue_inbox import QueueInbox
from ..services.task_queue_state import TaskQueueState
from ..services.task_queue_store import TaskQueueStore
from ..utils.logging import set_console_level


class CLIContext:
    """Context object for CLI commands."""

    def __init__(self):
        self.config: Optional[SystemConfiguration] = None
        self.config_manager: Optional[ConfigManager] = None
        self.store: Optional[TaskQueueStore] = None
        self.queue_state: Optional[TaskQueueState] = None
        self.run_lock: Optional[RunLock] = None
        self.inbox: Optional[QueueInbox] = None
        self.verbose = False
        self.quiet = False

    def running_queue_pid(self) -> Optional[int]:
        """Pid of another process running the queue, if any."""
        if self.run_lock is None or self.run_lock.held:
            return None
        return self.run_lock.owner_pid()

    def flush(self) -> None:
        """Write any debounced queue change before the process exits."""
        if self.store is not None and self.store.has_pending_save:
            self.store.save_immediately()


pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group(invoke_without_command=True)
@click.option('--config', '-c',
              type=click.Path(dir_okay=False),
              help='Path to configuration file')
@click.option('--verbose', '-v',
              is_flag=True,
              help='Enable verbose output')
@click.option('--quiet', '-q',
              is_flag=True,
              help='Suppress non-essential output')
@click.option('--version',
              is_flag=True,
              help='Show version information')
@click.pass_context
def cli(click_ctx: click.Context, config: Optional[str], verbose: bool, quiet: bool, version: bool):
    """Agent Task Queue.

    Queues prompts for headless AI coding agents (Claude, OpenCode) and runs
    them one at a time with retries, timeouts and an approval gate for risky
    tool calls.
    """
    if version:
        click.echo(f"agent-queue version {__version__}")
        return

    if click_ctx.invoked_subcommand is None:
        click.echo(click_ctx.get_help())
        return

    ctx = click_ctx.ensure_object(CLIContext)
    ctx.verbose = verbose
    ctx.quiet = quiet

    if verbose and quiet:
        click.echo("Error: --verbose and --quiet cannot be used together", err=True)
        sys.exit(1)

    if verbose:
        set_console_level("INFO")

    try:
        ctx.config_manager = ConfigManager(config)
        ctx.config = ctx.config_manager.load_config_with_env_override(config)

        ctx.store = TaskQueueStore.from_config(ctx.config)
        ctx.queue_state = TaskQueueState(ctx.store, ctx.config)
        ctx.run_lock = RunLock(ctx.config.get_run_lock_path())
        ctx.inbox = QueueInbox.from_config(ctx.config)
        # Crash recovery belongs to the process that runs the queue.
        ctx.queue_state.restore(recover=False)
    except (QueueException, OSError) as e:
        if not quiet:
            click.echo(f"Error initializing: {e}", err=True)
        sys.exit(1)

    click_ctx.call_on_close(ctx.flush)


# Import command modules
from .commands.logs import logs
from .commands.queue import queue as queue_cmd
from .commands.run import run

# Add commands to main group
cli.add_command(queue_cmd, name='queue')
cli.add_command(run)
cli.add_command(logs)


@cli.command()
@click.option('--format', 'output_format',
              type=click.Choice(['text', 'json']),
              default='text',
              help='Output format')
@pass_context
def info(ctx: CLIContext, output_format: str):
    """Show configuration, agent availability and queue counts."""
    config = ctx.config
    agents = {}
    for name, settings in config.agents.items():
        agents[name] = {
            "default_model": settings.get("default_model"),
            "executable": resolve_cli_path(
                name,
                env_var=f"{name.upper()}_PATH",
                configured_path=settings.get("executable_path"),
            ),
        }

    info_data = {
        "version": __version__,
        "config_file": ctx.config_manager.config_file,
        "data_directory": config.get_data_directory(),
        "queue_file": config.get_queue_file_path(),
        "task_timeout_seconds": config.execution["timeout_seconds"],
        "default_max_retries": config.retry["default_max_retries"],
        "agents": agents,
        "queue": ctx.queue_state.counts(),
    }

    if output_format == 'json':
        click.echo(json.dumps(info_data, indent=2))
        return

    click.echo("=== Agent Task Queue ===")
    click.echo(f"Version: {__version__}")
    click.echo(f"Data directory: {info_data['data_directory']}")
    click.echo(f"Queue file: {info_data['queue_file']}")
    click.echo(f"Task timeout: {info_data['task_timeout_seconds']}s")
    click.echo(f"Default max retries: {info_data['default_max_retries']}")
    click.echo()
    click.echo("Agents:")
    for name, details in agents.items():
        executable = details["executable"] or "not found"
        model = details["default_model"] or "-"
        click.echo(f"  {name}: model={model} executable={executable}")
    click.echo()
    click.echo("Queue:")
    for status, count in info_data["queue"].items():
        click.echo(f"  {status}: {count}")


def main():
    """Main entry point for the CLI application."""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\nOperation cancelled by user")
        sys.exit(1)


if __name__ == '__main__':
    main()
