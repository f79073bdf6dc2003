"""Queue command for managing queued agent tasks."""

import json
import os
import sys
from typing import Optional

import click

from ...exceptions import QueueException
from ...models.queued_task import (
    AgentType,
    ChatMode,
    ModelSelection,
    QueuedTask,
    TaskPriority,
    TaskStatus,
)

STATUS_MARKS = {
    TaskStatus.PENDING: "·",
    TaskStatus.RUNNING: "▶",
    TaskStatus.COMPLETED: "✓",
    TaskStatus.FAILED: "✗",
    TaskStatus.CANCELLED: "○",
}


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _find(cli_ctx, task_id: str) -> QueuedTask:
    try:
        return cli_ctx.queue_state.find_task(task_id)
    except QueueException as exc:
        _fail(exc.message)


def _forward(cli_ctx, action: str, summary: str, **params) -> bool:
    """Hand a change to the process running the queue.

    That process owns the snapshot, so writing it here would be lost.

    Returns:
        False if no other process is running the queue
    """
    pid = cli_ctx.running_queue_pid()
    if pid is None:
        return False
    try:
        cli_ctx.inbox.submit(action, **params)
    except OSError as exc:
        _fail(f"Could not hand the change to the running queue: {exc}")
    if not cli_ctx.quiet:
        click.echo(f"→ Sent to the running queue (pid {pid}): {summary}")
    return True


def _format_task_line(position: int, task: QueuedTask) -> str:
    mark = STATUS_MARKS[task.status]
    line = (
        f"{position}. {mark} {task.id[:8]} [{task.priority.value}] "
        f"{task.status.value:<9} {task.title}"
    )
    if task.status == TaskStatus.PENDING and task.retry_count:
        line += f"  (retry {task.retry_count}/{task.max_retries})"
    if task.status == TaskStatus.FAILED and task.is_retryable:
        line += "  (retryable)"
    return line


@click.group()
@click.pass_context
def queue(ctx):
    """Add, inspect and manage queued agent tasks."""
    pass


@queue.command()
@click.argument("prompt_words", nargs=-1, required=True)
@click.option("--title", help="Short title (defaults to the start of the prompt)")
@click.option(
    "--repo",
    "repo_path",
    type=click.Path(file_okay=False),
    default=".",
    show_default=True,
    help="Working directory the agent runs in",
)
@click.option(
    "--agent",
    type=click.Choice([a.value for a in AgentType]),
    default=AgentType.CLAUDE.value,
    show_default=True,
)
@click.option("--model", help="Model id, or provider/model for OpenCode")
@click.option("--mode", type=click.Choice([m.value for m in ChatMode]))
@click.option(
    "--priority",
    type=click.Choice([p.value for p in TaskPriority]),
    default=TaskPriority.NORMAL.value,
    show_default=True,
)
@click.option("--max-retries", type=click.IntRange(min=0), help="Automatic retry budget")
@click.option("--backoff", type=click.FloatRange(min=0), help="Initial retry delay in seconds")
@click.pass_context
def add(
    ctx,
    prompt_words: tuple,
    title: Optional[str],
    repo_path: str,
    agent: str,
    model: Optional[str],
    mode: Optional[str],
    priority: str,
    max_retries: Optional[int],
    backoff: Optional[float],
):
    """Queue a prompt for headless execution."""
    cli_ctx = ctx.find_root().obj
    prompt = " ".join(prompt_words).strip()

    if not prompt:
        _fail("Task prompt cannot be empty")

    if not title:
        first_line = prompt.splitlines()[0]
        title = first_line if len(first_line) <= 60 else first_line[:57] + "..."

    if _forward(
        cli_ctx,
        "add",
        f"queue [{priority}] {title}",
        title=title,
        prompt=prompt,
        repo_path=os.path.abspath(repo_path),
        agent_type=agent,
        model=model,
        mode=mode,
        priority=priority,
        max_retries=max_retries,
        retry_backoff_seconds=backoff,
    ):
        return

    try:
        task = cli_ctx.queue_state.enqueue(
            title=title,
            prompt=prompt,
            repo_path=os.path.abspath(repo_path),
            agent_type=AgentType(agent),
            model=ModelSelection.parse(model) if model else None,
            mode=ChatMode(mode) if mode else None,
            priority=TaskPriority(priority),
            max_retries=max_retries,
            retry_backoff_seconds=backoff,
        )
    except ValueError as exc:
        _fail(str(exc))

    if not cli_ctx.quiet:
        click.echo(f"✓ Queued {task.id[:8]} [{task.priority.value}]: {task.title}")
        click.echo(f"  Agent: {task.agent_type.value}  Directory: {task.repo_path}")


@queue.command(name="list")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Output format",
)
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in TaskStatus]),
    help="Only show tasks with this status",
)
@click.pass_context
def list_tasks(ctx, output_format: str, status_filter: Optional[str]):
    """Show tasks in queue order."""
    cli_ctx = ctx.find_root().obj
    tasks = cli_ctx.queue_state.tasks
    if status_filter:
        tasks = [t for t in tasks if t.status.value == status_filter]

    if output_format == "json":
        click.echo(json.dumps([t.to_dict() for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks.")
        return

    click.echo("=== Task Queue ===")
    for position, task in enumerate(tasks, start=1):
        click.echo(_format_task_line(position, task))


@queue.command()
@click.argument("task_id")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Output format",
)
@click.pass_context
def show(ctx, task_id: str, output_format: str):
    """Show every field of one task."""
    cli_ctx = ctx.find_root().obj
    task = _find(cli_ctx, task_id)

    if output_format == "json":
        click.echo(json.dumps(task.to_dict(), indent=2))
        return

    click.echo(f"Task {task.id}")
    click.echo(f"  Title:      {task.title}")
    click.echo(f"  Status:     {task.status.value}")
    click.echo(f"  Priority:   {task.priority.value}")
    click.echo(f"  Agent:      {task.agent_type.value}")
    if task.model:
        click.echo(f"  Model:      {task.model.cli_model_string}")
    if task.resolved_model:
        click.echo(f"  Ran with:   {task.resolved_model}")
    if task.mode:
        click.echo(f"  Mode:       {task.mode.value}")
    click.echo(f"  Directory:  {task.repo_path}")
    click.echo(f"  Retries:    {task.retry_count}/{task.max_retries}")
    click.echo(f"  Created:    {task.created_at.isoformat()}")
    if task.started_at:
        click.echo(f"  Started:    {task.started_at.isoformat()}")
    if task.finished_at:
        click.echo(f"  Finished:   {task.finished_at.isoformat()}")
    if task.retry_after:
        click.echo(f"  Retry at:   {task.retry_after.isoformat()}")
    if task.exit_reason:
        click.echo(f"  Exit:       {task.exit_reason.value}")
    if task.failure_kind:
        click.echo(f"  Failure:    {task.failure_kind.value}")
    if task.status == TaskStatus.FAILED:
        click.echo(f"  Retryable:  {'yes' if task.is_retryable else 'no'}")
    if task.last_error:
        click.echo(f"  Error:      {task.last_error}")
    if task.interrupted_note:
        click.echo(f"  Note:       {task.interrupted_note}")
    if task.risky_operations:
        click.echo(f"  Approval:   {task.approval_state.value}")
        for operation in task.risky_operations:
            click.echo(f"    ⚠ {operation}")
    if task.session_id:
        click.echo(f"  Session:    {task.session_id}")
    if task.log_artifact_path:
        click.echo(f"  Log:        {task.log_artifact_path}")
    click.echo()
    click.echo("Prompt:")
    click.echo(task.prompt)
    if task.result_summary:
        click.echo()
        click.echo("Result:")
        click.echo(task.result_summary)


@queue.command()
@click.argument("task_id")
@click.option("--title", help="New title")
@click.option("--prompt", help="New prompt")
@click.option("--priority", type=click.Choice([p.value for p in TaskPriority]))
@click.pass_context
def edit(ctx, task_id: str, title: Optional[str], prompt: Optional[str], priority: Optional[str]):
    """Edit a pending task."""
    cli_ctx = ctx.find_root().obj
    task = _find(cli_ctx, task_id)

    if title is None and prompt is None and priority is None:
        _fail("Nothing to change; pass --title, --prompt or --priority")

    if _forward(
        cli_ctx, "edit", f"edit {task.id[:8]}",
        task_id=task.id, title=title, prompt=prompt, priority=priority,
    ):
        return

    try:
        updated = cli_ctx.queue_state.edit(
            task.id,
            title=title,
            prompt=prompt,
            priority=TaskPriority(priority) if priority else None,
        )
    except ValueError as exc:
        _fail(getattr(exc, "message", str(exc)))

    if not cli_ctx.quiet:
        click.echo(f"✓ Updated {updated.id[:8]}: {updated.title}")


@queue.command()
@click.argument("task_id")
@click.pass_context
def remove(ctx, task_id: str):
    """Remove a pending task."""
    cli_ctx = ctx.find_root().obj
    task = _find(cli_ctx, task_id)
    if _forward(cli_ctx, "remove", f"remove {task.id[:8]}", task_id=task.id):
        return
    try:
        cli_ctx.queue_state.remove(task.id)
    except QueueException as exc:
        _fail(exc.message)

    if not cli_ctx.quiet:
        click.echo(f"✓ Removed {task.id[:8]}: {task.title}")


@queue.command()
@click.argument("task_id")
@click.argument("position", type=click.IntRange(min=1))
@click.pass_context
def reorder(ctx, task_id: str, position: int):
    """Move a pending task to POSITION (1-based) in the list."""
    cli_ctx = ctx.find_root().obj
    task = _find(cli_ctx, task_id)
    if _forward(
        cli_ctx, "reorder", f"move {task.id[:8]} to position {position}",
        task_id=task.id, index=position - 1,
    ):
        return
    try:
        cli_ctx.queue_state.reorder(task.id, position - 1)
    except QueueException as exc:
        _fail(exc.message)

    if not cli_ctx.quiet:
        click.echo(f"✓ Moved {task.id[:8]} to position {position}")


@queue.command()
@click.argument("task_id")
@click.pass_context
def retry(ctx, task_id: str):
    """Send a failed task back to the queue."""
    cli_ctx = ctx.find_root().obj
    task = _find(cli_ctx, task_id)
    if _forward(cli_ctx, "retry", f"retry {task.id[:8]}", task_id=task.id):
        return
    try:
        updated = cli_ctx.queue_state.retry(task.id)
    except QueueException as exc:
        _fail(exc.message)

    if not cli_ctx.quiet:
        click.echo(f"✓ Requeued {updated.id[:8]} (retry {updated.retry_count})")


@queue.command()
@click.argument("task_id")
@click.pass_context
def cancel(ctx, task_id: str):
    """Cancel a pending task, or the running one while the queue runs."""
    cli_ctx = ctx.find_root().obj
    task = _find(cli_ctx, task_id)

    if _forward(cli_ctx, "cancel", f"cancel {task.id[:8]}", task_id=task.id):
        return

    if task.status == TaskStatus.RUNNING:
        _fail("Task is marked running but no queue is running; start 'run' to recover it")

    try:
        cli_ctx.queue_state.cancel_task(task.id)
    except QueueException as exc:
        _fail(exc.message)

    if not cli_ctx.quiet:
        click.echo(f"✓ Cancelled {task.id[:8]}: {task.title}")


@queue.command()
@click.option("--confirm", is_flag=True, help="Confirm without prompt")
@click.pass_context
def prune(ctx, confirm: bool):
    """Remove completed, failed and cancelled tasks."""
    cli_ctx = ctx.find_root().obj

    if not confirm and not cli_ctx.quiet:
        if not click.confirm("Remove all finished tasks?"):
            click.echo("Prune cancelled.")
            return

    if _forward(cli_ctx, "prune", "remove finished tasks"):
        return

    removed_count = cli_ctx.queue_state.remove_finished()
    if removed_count:
        click.echo(f"✓ Removed {removed_count} finished task(s).")
    else:
        click.echo("No finished tasks.")
