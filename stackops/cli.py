# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Command line interface.

Host commands (backup, restore, run, ...) run on the stack host, usually
through the command document. ``stackops remote ...`` runs on an operator
workstation and drives the host through SSM and EC2.

Exit codes: 0 success, 1 failed target or unmet precondition, 2 usage
error or unknown action, 130 cancelled by signal.
"""

import asyncio
import json
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Awaitable, Callable, Iterator, List, Optional, Tuple, TypeVar

import structlog
import typer

from stackops import __version__
from stackops._logging import LogLevel, configure_logging, get_log_level
from stackops.actions import DEFAULT_LOG_LINES, Action, run_action, render_ssm_document
from stackops.backup import BackupResult, run_backup
from stackops.env import create_config_from_env, create_remote_config_from_env
from stackops.errors import explain_missing_journal
from stackops.exceptions import ConfigurationError, PreconditionFailed, StackOpsError, UnknownAction
from stackops.journal import RUN_KINDS, RunRecord, TargetRecord, recent_runs
from stackops.remote import (
    instance_state,
    open_clients,
    open_shell,
    resolve_instance_id,
    send_action,
    start_instance,
    stop_instance,
)
from stackops.restore import RestoreResult, run_restore
from stackops.store import human_size

logger = structlog.get_logger()

EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

T = TypeVar("T")

app = typer.Typer(
    name="stackops",
    help="Backup, restore and maintenance of the LLM application stack",
    add_completion=False,
    no_args_is_help=True,
    pretty_exceptions_short=True,
)

remote_app = typer.Typer(
    help="Operate the stack host from a workstation (SSM and EC2)",
    no_args_is_help=True,
)
app.add_typer(remote_app, name="remote")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main(
    log_level: LogLevel = typer.Option(
        get_log_level(),
        help="The log level",
        case_sensitive=False,
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit logs as JSON lines",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit",
    ),
) -> None:
    """Backup, restore and maintenance of the LLM application stack."""
    configure_logging(log_level, json_logs)


async def _cancellable(make: Callable[[], Awaitable[T]]) -> T:
    """Await make() with SIGINT/SIGTERM cancelling it, so guards release."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        return await make()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@contextmanager
def _interruptible_prompt() -> Iterator[None]:
    """
    Give SIGINT back to Python while a blocking prompt runs on the loop.

    The cancelling handler only fires once the loop runs again, which a
    prompt waiting on stdin never lets it do.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    try:
        removed = loop.remove_signal_handler(signal.SIGINT)
    except (NotImplementedError, RuntimeError):
        removed = False
    try:
        yield
    finally:
        if removed:
            loop.add_signal_handler(signal.SIGINT, task.cancel)


def _execute(make: Callable[[], Awaitable[T]]) -> T:
    """Run one async operation and map failures to exit codes."""
    try:
        return asyncio.run(_cancellable(make))
    except asyncio.CancelledError:
        logger.warning("operation_cancelled")
        typer.echo("Cancelled", err=True)
        raise typer.Exit(EXIT_CANCELLED)
    except KeyboardInterrupt:
        typer.echo("Cancelled", err=True)
        raise typer.Exit(EXIT_CANCELLED)
    except (UnknownAction, ConfigurationError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_USAGE)
    except StackOpsError as e:
        logger.error("operation_failed", error=str(e))
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(EXIT_FAILURE)


def _print_backup(result: BackupResult) -> None:
    typer.echo(f"Backup {result.timestamp} -> s3://{result.bucket}/")
    for outcome in result.outcomes:
        line = f"  {outcome.target:<16} {outcome.status.value:<8}"
        if outcome.size:
            line += f" {human_size(outcome.size):>10}"
        if outcome.key:
            line += f"  {outcome.key}"
        if outcome.reason:
            line += f"  ({outcome.reason})"
        typer.echo(line)
    for service in result.resume_failures:
        typer.echo(f"  WARNING: service {service} could not be resumed", err=True)
    if result.listing_error:
        typer.echo(f"  WARNING: listing backups failed: {result.listing_error}", err=True)
    typer.echo(
        f"{result.succeeded_count} succeeded, {result.failed_count} failed, "
        f"{result.skipped_count} skipped"
    )


def _print_restore(result: RestoreResult) -> None:
    if result.listing_only:
        if not result.restore_points:
            typer.echo(f"No backups found in s3://{result.bucket}/")
            return
        typer.echo(f"Available backups in s3://{result.bucket}/:")
        for point in result.restore_points:
            typer.echo(
                f"  {point.timestamp}  {human_size(point.total_size):>10}  "
                f"{', '.join(point.targets)}"
            )
        typer.echo("")
        typer.echo("Restore with: stackops restore <TIMESTAMP>")
        return

    if result.aborted:
        typer.echo("Restore cancelled")
        return

    typer.echo(f"Restore {result.timestamp} from s3://{result.bucket}/")
    for outcome in result.outcomes:
        line = f"  {outcome.target:<16} {outcome.status.value:<8}"
        if outcome.reason:
            line += f"  ({outcome.reason})"
        typer.echo(line)
    if result.restart_failed:
        typer.echo("  WARNING: the stack did not come back up", err=True)
    typer.echo(
        f"{result.restored_count} restored, {result.failed_count} failed, "
        f"{result.skipped_count} skipped"
    )


@app.command()
def backup(
    bucket: Optional[str] = typer.Option(None, help="Backup bucket (default: BACKUP_BUCKET or terraform output)"),
    targets: Optional[List[str]] = typer.Option(
        None,
        "--target",
        help="Target to back up, 'short-name[:service+service]' (repeatable)",
    ),
    quiesce: Optional[str] = typer.Option(None, help="Quiesce mode: pause, stop or none"),
    project_name: Optional[str] = typer.Option(None, help="Compose project name"),
    purge: Optional[bool] = typer.Option(
        None,
        "--purge/--no-purge",
        help="Delete backups older than the retention period afterwards",
    ),
) -> None:
    """Archive the stack volumes to the backup bucket."""

    async def _backup() -> BackupResult:
        config = create_config_from_env(
            bucket=bucket,
            targets=targets or None,
            quiesce_mode=quiesce,
            project_name=project_name,
            purge_expired=purge,
        )
        return await run_backup(config)

    result = _execute(_backup)
    _print_backup(result)
    raise typer.Exit(result.exit_code)


@app.command()
def restore(
    timestamp: Optional[str] = typer.Argument(
        None,
        help="Backup timestamp YYYYMMDD_HHMMSS; omit to list available backups",
    ),
    yes: bool = typer.Option(False, "--yes", help="Skip the interactive confirmation"),
    bucket: Optional[str] = typer.Option(None, help="Backup bucket"),
    targets: Optional[List[str]] = typer.Option(None, "--target", help="Target to restore (repeatable)"),
    project_name: Optional[str] = typer.Option(None, help="Compose project name"),
) -> None:
    """List backups, or restore the stack volumes from one backup."""

    def ask(prompt: str) -> str:
        if yes:
            return "yes"
        typer.echo("WARNING: This will stop all services and replace current volume data!")
        with _interruptible_prompt():
            try:
                return typer.prompt(prompt, default="", show_default=False)
            except typer.Abort:
                # Ctrl-C or end of input at the prompt
                raise KeyboardInterrupt

    async def _restore() -> RestoreResult:
        config = create_config_from_env(bucket=bucket, targets=targets or None, project_name=project_name)
        return await run_restore(config, timestamp=timestamp, ask=ask)

    result = _execute(_restore)
    _print_restore(result)
    raise typer.Exit(result.exit_code)


@app.command("list-backups")
def list_backups_command(
    bucket: Optional[str] = typer.Option(None, help="Backup bucket"),
    limit: Optional[int] = typer.Option(None, min=1, help="Show at most this many recent backups"),
) -> None:
    """List the most recent backup archives."""

    async def _list():
        config = create_config_from_env(bucket=bucket, list_limit=limit)
        return await run_action(Action.LIST_BACKUPS, config)

    report = _execute(_list)
    typer.echo(report.render())
    raise typer.Exit(report.exit_code)


@app.command("run")
def run_command_action(
    action: str = typer.Argument(..., help="Action name, e.g. status, restart-caddy, logs-litellm"),
    lines: int = typer.Option(DEFAULT_LOG_LINES, min=1, help="Log lines for logs-* actions"),
) -> None:
    """Run one host maintenance action."""

    async def _run():
        parsed = Action.parse(action)
        return await run_action(parsed, create_config_from_env(), lines=lines)

    report = _execute(_run)
    typer.echo(report.render())
    raise typer.Exit(report.exit_code)


def _print_runs(runs: List[Tuple[RunRecord, List[TargetRecord]]]) -> None:
    if not runs:
        typer.echo("No runs recorded")
        return
    for run, targets in runs:
        if run["completed_at"] is None:
            status = "unfinished"
        else:
            status = f"exit {run['exit_code']}"
        typer.echo(f"{run['id']}  {run['kind']:<8} {run['run_timestamp']}  {run['started_at']}  {status}")
        for target in targets:
            line = f"  {target['target']:<16} {target['status']:<8}"
            if target["key"]:
                line += f"  {target['key']}"
            if target["error"]:
                line += f"  ({target['error']})"
            typer.echo(line)


@app.command("runs")
def runs_command(
    limit: int = typer.Option(20, min=1, help="Show at most this many recent runs"),
    kind: Optional[str] = typer.Option(None, help="Only show 'backup' or 'restore' runs"),
    journal: Optional[Path] = typer.Option(None, help="Run journal database (default: STACKOPS_JOURNAL)"),
) -> None:
    """Show recent backup and restore runs from the local journal."""

    async def _runs():
        if kind is not None and kind not in RUN_KINDS:
            raise ConfigurationError(f"Invalid run kind: {kind!r}. Expected one of: {', '.join(RUN_KINDS)}.")
        config = create_config_from_env(journal_path=journal)
        if config.journal_path is None:
            raise PreconditionFailed(explain_missing_journal())
        return await recent_runs(config.journal_path, limit=limit, kind=kind)

    _print_runs(_execute(_runs))


@app.command("ssm-document")
def ssm_document(
    command: str = typer.Option("stackops", help="Command the document runs on the host"),
) -> None:
    """Print the command document (JSON) that exposes the host actions."""
    typer.echo(json.dumps(render_ssm_document(command), indent=2))


def _remote_config(instance_id: Optional[str]):
    return create_remote_config_from_env(instance_id=instance_id)


InstanceIdOption = typer.Option(None, "--instance-id", help="Instance id (default: terraform output)")


@remote_app.command("send")
def remote_send(
    action: str = typer.Argument(..., help="Action to run on the host"),
    lines: int = typer.Argument(DEFAULT_LOG_LINES, min=1, help="Log lines for logs-* actions"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for the command and print its output"),
    instance_id: Optional[str] = InstanceIdOption,
) -> None:
    """Run a host action through the command document."""

    async def _send():
        parsed = Action.parse(action)
        config = _remote_config(instance_id)
        target = await resolve_instance_id(config)
        async with open_clients(config) as (ssm, _ec2):
            return await send_action(ssm, config, target, parsed, lines, wait=wait)

    result = _execute(_send)
    typer.echo(f"Command {result.command_id} on {result.instance_id}: {result.status}")
    if result.output:
        typer.echo(result.output.rstrip())
    if result.error_output:
        typer.echo(result.error_output.rstrip(), err=True)
    if wait and not result.succeeded:
        raise typer.Exit(EXIT_FAILURE)


@remote_app.command("start")
def remote_start(instance_id: Optional[str] = InstanceIdOption) -> None:
    """Start the instance."""

    async def _start():
        config = _remote_config(instance_id)
        target = await resolve_instance_id(config)
        async with open_clients(config) as (_ssm, ec2):
            return await start_instance(ec2, target)

    typer.echo(_execute(_start))


@remote_app.command("stop")
def remote_stop(instance_id: Optional[str] = InstanceIdOption) -> None:
    """Stop the instance."""

    async def _stop():
        config = _remote_config(instance_id)
        target = await resolve_instance_id(config)
        async with open_clients(config) as (_ssm, ec2):
            return await stop_instance(ec2, target)

    typer.echo(_execute(_stop))


@remote_app.command("instance-status")
def remote_instance_status(instance_id: Optional[str] = InstanceIdOption) -> None:
    """Print the instance state."""

    async def _state():
        config = _remote_config(instance_id)
        target = await resolve_instance_id(config)
        async with open_clients(config) as (_ssm, ec2):
            return await instance_state(ec2, target)

    typer.echo(_execute(_state))


@remote_app.command("shell")
def remote_shell(instance_id: Optional[str] = InstanceIdOption) -> None:
    """Open an interactive session on the instance."""

    async def _resolve():
        config = _remote_config(instance_id)
        return config, await resolve_instance_id(config)

    config, target = _execute(_resolve)
    try:
        open_shell(config, target)
    except StackOpsError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(EXIT_FAILURE)
