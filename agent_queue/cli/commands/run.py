"""Run command: execute the queue in the foreground.

The run process owns the queue while it is active: it holds the run lock,
restores the snapshot with crash recovery, starts the orchestrator and
handles approval requests on the main thread, either interactively or by
policy. Changes made by other commands meanwhile arrive through the queue
inbox and are applied here.
"""

import queue as queue_module
import sys

import click

from ...exceptions import InvalidTransitionError, QueueLockedError
from ...lib.logging_config import LoggingConfig
from ...lib.signal_handler import SignalHandler
from ...services.task_orchestrator import TaskOrchestrator


@click.command()
@click.option("--until-idle", is_flag=True, help="Exit once no task is left to run")
@click.option("--auto-approve", is_flag=True, help="Approve every risky operation")
@click.option("--auto-reject", is_flag=True, help="Reject every risky operation")
@click.pass_context
def run(ctx, until_idle: bool, auto_approve: bool, auto_reject: bool):
    """Run queued tasks one at a time.

    Examples:
      agent-queue run
      agent-queue run --until-idle --auto-reject
    """
    cli_ctx = ctx.find_root().obj

    if auto_approve and auto_reject:
        click.echo("Error: --auto-approve and --auto-reject cannot be combined", err=True)
        sys.exit(1)

    run_lock = cli_ctx.run_lock
    try:
        run_lock.acquire()
    except QueueLockedError as exc:
        click.echo(f"Error: {exc.message}", err=True)
        sys.exit(1)

    try:
        _run_queue(cli_ctx, until_idle, auto_approve, auto_reject)
    finally:
        run_lock.release()


def _run_queue(cli_ctx, until_idle: bool, auto_approve: bool, auto_reject: bool) -> None:
    logging_config = LoggingConfig.from_config(cli_ctx.config)
    logging_config.apply()

    queue_state = cli_ctx.queue_state
    queue_state.restore(recover=True)
    recovered = cli_ctx.store.recovered_task_ids
    if recovered and not cli_ctx.quiet:
        click.echo(f"Recovered {len(recovered)} interrupted task(s)")

    inbox = cli_ctx.inbox
    applied = inbox.process(queue_state)
    if applied and not cli_ctx.quiet:
        click.echo(f"Applied {applied} queued change(s)")

    orchestrator = TaskOrchestrator(queue_state, cli_ctx.config)
    approvals: "queue_module.Queue[dict]" = queue_module.Queue()
    orchestrator.add_event_callback("approval_required", approvals.put)
    if not cli_ctx.quiet:
        _attach_progress_output(orchestrator)

    handler = SignalHandler(orchestrator, queue_state)
    handler.register()

    if not cli_ctx.quiet:
        counts = queue_state.counts()
        click.echo(f"Running queue ({counts['pending']} pending). Press Ctrl+C to stop.")

    orchestrator.start()
    try:
        while not handler.shutdown_requested.is_set():
            if inbox.process(queue_state, orchestrator):
                continue
            try:
                request = approvals.get(timeout=0.5)
            except queue_module.Empty:
                if until_idle and orchestrator.is_idle:
                    break
                continue
            _decide(queue_state, handler, request, auto_approve, auto_reject)
    finally:
        handler.shutdown()
        orchestrator.remove_event_callback("approval_required", approvals.put)
        handler.restore()
        logging_config.remove()

    if not cli_ctx.quiet:
        counts = queue_state.counts()
        click.echo(
            f"Stopped. completed={counts['completed']} failed={counts['failed']} "
            f"pending={counts['pending']}"
        )


def _attach_progress_output(orchestrator: TaskOrchestrator) -> None:
    def on_started(data):
        click.echo(f"▶ {data['task_id'][:8]} started: {data['title']}")

    def on_finished(data):
        mark = "✓" if data["status"] == "completed" else "✗"
        line = f"{mark} {data['task_id'][:8]} {data['status']}"
        if data.get("last_error") and data["status"] != "completed":
            line += f": {data['last_error']}"
        click.echo(line)

    def on_retry(data):
        click.echo(
            f"↻ {data['task_id'][:8]} retry {data['retry_count']} "
            f"in {data['delay_seconds']:g}s: {data['last_error']}"
        )

    orchestrator.add_event_callback("task_started", on_started)
    orchestrator.add_event_callback("task_finished", on_finished)
    orchestrator.add_event_callback("retry_scheduled", on_retry)


def _decide(
    queue_state, handler: SignalHandler, request: dict, auto_approve: bool, auto_reject: bool
) -> None:
    task_id = request["task_id"]
    click.echo(f"⚠ {task_id[:8]} ({request['title']}) ran risky operations:")
    for operation in request["risky_operations"]:
        click.echo(f"    - {operation}")

    if auto_approve:
        approved = True
    elif auto_reject:
        approved = False
    else:
        try:
            with handler.interruptible():
                approved = click.confirm("Approve and continue this task?", default=False)
        except click.Abort:
            # Ctrl+C or end of input at the prompt stops the run.
            click.echo("")
            handler.shutdown()
            return

    try:
        if approved:
            queue_state.approve(task_id)
            click.echo(f"  approved {task_id[:8]}")
        else:
            queue_state.reject(task_id)
            click.echo(f"  rejected {task_id[:8]}")
    except InvalidTransitionError:
        click.echo(f"  {task_id[:8]} is no longer waiting for approval")
