# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Host Actions - The closed set of maintenance actions run on the
stack host.

Each action maps to exactly one handler. The remote command document
exposes the same set as its ``action`` parameter, so an action that is
not listed here cannot be dispatched at all. Restore is deliberately
absent: it needs an operator at the keyboard.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Sequence, Tuple

import structlog

from stackops.backup import run_backup
from stackops.catalog import list_backups
from stackops.compose import ComposeProject, require_host
from stackops.config import DEFAULT_DOCUMENT_NAME, StackOpsConfig
from stackops.errors import explain_unknown_action
from stackops.exceptions import CommandError, UnknownAction
from stackops.shell import CommandRunner, as_user, run_command
from stackops.store import human_size, open_store_for
from stackops.terraform import resolve_bucket

logger = structlog.get_logger()

DEFAULT_LOG_LINES = 50
STATUS_LOG_LINES = 10
RESTART_LOG_LINES = 20
SERVICE_LOG_LINES = 30

CLOUDWATCH_CTL = "/opt/aws/amazon-cloudwatch-agent/bin/amazon-cloudwatch-agent-ctl"


class Action(str, Enum):
    """Actions accepted by ``stackops run`` and the command document."""

    STATUS = "status"
    UPDATE_IMAGES = "update-images"
    RESTART = "restart"
    RESTART_CADDY = "restart-caddy"
    RESTART_OPENWEBUI = "restart-openwebui"
    RESTART_LITELLM = "restart-litellm"
    BACKUP_VOLUMES = "backup-volumes"
    LIST_BACKUPS = "list-backups"
    REDEPLOY = "redeploy"
    LOGS_CADDY = "logs-caddy"
    LOGS_OPENWEBUI = "logs-openwebui"
    LOGS_LITELLM = "logs-litellm"
    CLOUDWATCH_STATUS = "cloudwatch-status"
    CLOUDWATCH_RESTART = "cloudwatch-restart"

    @classmethod
    def parse(cls, name: str) -> "Action":
        """
        Resolve an action name or operator alias.

        Raises:
            UnknownAction: If the name is not a supported action
        """
        key = name.strip().lower()
        key = ACTION_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            supported = [a.value for a in cls]
            raise UnknownAction(
                explain_unknown_action(name, supported),
                details={"action": name},
            ) from None

    @property
    def service(self) -> str | None:
        """Compose service for per-service actions."""
        for prefix in ("restart-", "logs-"):
            if self.value.startswith(prefix):
                return self.value[len(prefix):]
        return None


ACTION_ALIASES: Dict[str, str] = {
    "update": Action.UPDATE_IMAGES.value,
    "backup": Action.BACKUP_VOLUMES.value,
}


@dataclass
class ActionReport:
    """Captured output of one action, in the order it was produced."""

    action: Action
    sections: List[Tuple[str, str]] = field(default_factory=list)
    exit_code: int = 0

    def add(self, title: str, text: str) -> None:
        self.sections.append((title, text.rstrip()))

    def render(self) -> str:
        parts = []
        for title, text in self.sections:
            parts.append(f"=== {title} ===")
            if text:
                parts.append(text)
        return "\n".join(parts)


@dataclass
class ActionContext:
    config: StackOpsConfig
    compose: ComposeProject
    runner: CommandRunner
    lines: int
    report: ActionReport

    async def system(self, title: str, argv: Sequence[str], *, user: str | None = None) -> int:
        """Run a non-compose command and add its output; returns the exit status."""
        result = await self.runner(as_user(argv, user), check=False)
        self.report.add(title, result.stdout + result.stderr)
        return result.returncode

    async def compose_ps(self, *services: str) -> None:
        self.report.add("Service status", await self.compose.ps(*services))

    async def service_logs(self, tail: int, services: Sequence[str] | None = None) -> None:
        for service in services or self.config.services:
            self.report.add(f"Logs: {service}", await self.compose.logs(service, tail=tail))


Handler = Callable[[ActionContext], Awaitable[None]]


async def _status(ctx: ActionContext) -> None:
    await ctx.compose_ps()
    await ctx.system("Docker disk usage", ["docker", "system", "df"], user=ctx.config.compose_user)
    await ctx.service_logs(STATUS_LOG_LINES)
    await ctx.system("Disk", ["df", "-h", "/"])
    await ctx.system("Memory", ["free", "-h"])


async def _prune_images(ctx: ActionContext) -> None:
    result = await ctx.runner(
        as_user(["docker", "image", "prune", "-f"], ctx.config.compose_user)
    )
    ctx.report.add("Image cleanup", result.stdout)


async def _update_images(ctx: ActionContext) -> None:
    await ctx.compose.pull()
    await ctx.compose.up()
    await _prune_images(ctx)
    await ctx.compose_ps()


async def _restart_stack(ctx: ActionContext) -> None:
    await ctx.compose.down()
    await ctx.compose.up()
    await ctx.compose_ps()
    await ctx.service_logs(RESTART_LOG_LINES)


async def _restart_service(ctx: ActionContext) -> None:
    service = ctx.report.action.service
    logger.info("service_restarting", service=service)
    await ctx.compose.restart(service)
    await ctx.compose_ps(service)
    await ctx.service_logs(SERVICE_LOG_LINES, [service])


async def _service_logs(ctx: ActionContext) -> None:
    await ctx.service_logs(ctx.lines, [ctx.report.action.service])


async def _backup_volumes(ctx: ActionContext) -> None:
    result = await run_backup(ctx.config, compose=ctx.compose, runner=ctx.runner)
    lines = [f"Backup run {result.run_id} at {result.timestamp} to s3://{result.bucket}"]
    for outcome in result.outcomes:
        line = f"{outcome.target}: {outcome.status.value}"
        if outcome.key:
            line += f" {outcome.key}"
        if outcome.size:
            line += f" ({human_size(outcome.size)})"
        if outcome.reason:
            line += f" - {outcome.reason}"
        lines.append(line)
    for failed in result.resume_failures:
        lines.append(f"{failed}: could not be resumed")
    if result.listing_error:
        lines.append(f"listing failed: {result.listing_error}")
    ctx.report.add("Backup", "\n".join(lines))
    ctx.report.exit_code = result.exit_code


async def _list_backups(ctx: ActionContext) -> None:
    bucket = await resolve_bucket(ctx.config, ctx.runner)
    async with open_store_for(ctx.config, bucket) as store:
        objects = await list_backups(
            store, ctx.config.key_prefix, ctx.config.targets, limit=ctx.config.list_limit
        )
        title = f"Backups in {store.url(ctx.config.key_prefix.strip('/') + '/')}"
    rows = [
        f"{obj.last_modified:%Y-%m-%d %H:%M:%S}  {human_size(obj.size):>10}  {obj.key}"
        for obj in objects
    ]
    ctx.report.add(title, "\n".join(rows) if rows else "No backups found")


async def _redeploy(ctx: ActionContext) -> None:
    user = ctx.config.compose_user
    app_dir = ctx.config.app_dir
    pull = await ctx.runner(as_user(["git", "pull", "--ff-only"], user), check=False, cwd=app_dir)
    output = pull.stdout + pull.stderr
    if not pull.ok:
        logger.warning("git_fast_forward_failed", app_dir=str(app_dir), stderr=pull.stderr.strip())
        fetch = await ctx.runner(as_user(["git", "fetch", "--all", "--prune"], user), cwd=app_dir)
        output += fetch.stdout + fetch.stderr
    ctx.report.add("Repository update", output)

    await ctx.compose.pull()
    await ctx.compose.up()
    await _prune_images(ctx)
    await ctx.compose_ps()


async def _cloudwatch_status(ctx: ActionContext) -> None:
    ctx.report.exit_code = await ctx.system("CloudWatch agent", [CLOUDWATCH_CTL, "-a", "status"])


async def _cloudwatch_restart(ctx: ActionContext) -> None:
    await ctx.runner([CLOUDWATCH_CTL, "-a", "stop"])
    await ctx.runner([CLOUDWATCH_CTL, "-m", "ec2", "-a", "start"])
    ctx.report.exit_code = await ctx.system("CloudWatch agent", [CLOUDWATCH_CTL, "-a", "status"])


HANDLERS: Dict[Action, Handler] = {
    Action.STATUS: _status,
    Action.UPDATE_IMAGES: _update_images,
    Action.RESTART: _restart_stack,
    Action.RESTART_CADDY: _restart_service,
    Action.RESTART_OPENWEBUI: _restart_service,
    Action.RESTART_LITELLM: _restart_service,
    Action.BACKUP_VOLUMES: _backup_volumes,
    Action.LIST_BACKUPS: _list_backups,
    Action.REDEPLOY: _redeploy,
    Action.LOGS_CADDY: _service_logs,
    Action.LOGS_OPENWEBUI: _service_logs,
    Action.LOGS_LITELLM: _service_logs,
    Action.CLOUDWATCH_STATUS: _cloudwatch_status,
    Action.CLOUDWATCH_RESTART: _cloudwatch_restart,
}

# Actions that do not touch docker on this host
_NO_HOST_CHECK = {Action.LIST_BACKUPS, Action.CLOUDWATCH_STATUS, Action.CLOUDWATCH_RESTART}


async def run_action(
    action: Action,
    config: StackOpsConfig,
    *,
    lines: int = DEFAULT_LOG_LINES,
    compose: ComposeProject | None = None,
    runner: CommandRunner = run_command,
) -> ActionReport:
    """
    Run one host action and capture its output.

    A failing external command ends the action: its stderr is added to the
    report and the exit code becomes 1. Other stackops errors propagate.

    Args:
        action: Action to run
        config: Host configuration
        lines: Log lines for the logs-* actions
        compose: Compose project (built from config when omitted)
        runner: Command runner

    Raises:
        PreconditionFailed: If docker or the compose directory is missing
    """
    if lines < 1:
        lines = DEFAULT_LOG_LINES

    if compose is None and action not in _NO_HOST_CHECK:
        require_host(config)
    compose = compose or ComposeProject.from_config(config, runner)

    report = ActionReport(action=action)
    ctx = ActionContext(config=config, compose=compose, runner=runner, lines=lines, report=report)

    logger.info("action_started", action=action.value)
    try:
        await HANDLERS[action](ctx)
    except CommandError as e:
        report.add("Error", e.stderr or e.message)
        report.exit_code = 1
        logger.error("action_failed", action=action.value, error=str(e))
        return report

    logger.info("action_completed", action=action.value, exit_code=report.exit_code)
    return report


def render_ssm_document(
    command: str = "stackops",
    description: str = "Manage the LLM application stack",
) -> dict:
    """
    Build the ``llm-app-management`` command document (schema 2.2).

    The ``action`` parameter only allows the Action values, so dispatch is
    validated before anything runs on the host.
    """
    return {
        "schemaVersion": "2.2",
        "description": description,
        "parameters": {
            "action": {
                "type": "String",
                "description": "Action to perform",
                "allowedValues": [a.value for a in Action],
            },
            "lines": {
                "type": "String",
                "description": "Number of log lines to show (for logs actions)",
                "default": str(DEFAULT_LOG_LINES),
                "allowedPattern": "^[0-9]{1,5}$",
            },
        },
        "mainSteps": [
            {
                "action": "aws:runShellScript",
                "name": DEFAULT_DOCUMENT_NAME.replace("-", "_"),
                "inputs": {
                    "timeoutSeconds": "3600",
                    "runCommand": [
                        "set -euo pipefail",
                        f"{command} run '{{{{ action }}}}' --lines '{{{{ lines }}}}'",
                    ],
                },
            }
        ],
    }
