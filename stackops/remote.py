# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Remote - Operator-side control of the stack host.

Host actions are dispatched through the SSM command document; the
instance itself is started, stopped and inspected through EC2. Nothing
here touches the host directly except ``open_shell``, which hands the
terminal over to an interactive session.
"""

import asyncio
import os
import shutil
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Tuple

import structlog
from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from stackops.actions import DEFAULT_LOG_LINES, Action
from stackops.config import RemoteConfig
from stackops.errors import (
    explain_missing_instance_id,
    explain_missing_session_plugin,
    explain_missing_tool,
)
from stackops.exceptions import DispatchError, PreconditionFailed
from stackops.shell import CommandRunner, run_command
from stackops.terraform import terraform_output

logger = structlog.get_logger()

TERMINAL_STATUSES = frozenset(
    {
        "Success",
        "Cancelled",
        "Failed",
        "TimedOut",
        "DeliveryTimedOut",
        "ExecutionTimedOut",
        "Undeliverable",
        "Terminated",
        "InvalidPlatform",
        "AccessDenied",
    }
)


@dataclass
class InvocationResult:
    """Outcome of one dispatched command on the instance."""

    command_id: str
    instance_id: str
    status: str
    output: str = ""
    error_output: str = ""
    response_code: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "Success"


async def resolve_instance_id(config: RemoteConfig, runner: CommandRunner = run_command) -> str:
    """
    Explicit instance id, else the ``instance_id`` terraform output.

    Raises:
        PreconditionFailed: If neither yields a value
    """
    if config.instance_id:
        return config.instance_id

    instance_id = await terraform_output(config.terraform_dir, "instance_id", runner)
    if not instance_id:
        raise PreconditionFailed(
            explain_missing_instance_id(),
            details={"terraform_dir": str(config.terraform_dir)},
        )
    return instance_id


@asynccontextmanager
async def open_clients(config: RemoteConfig) -> AsyncIterator[Tuple[Any, Any]]:
    """SSM and EC2 clients for the configured region."""
    session = get_session()
    async with AsyncExitStack() as stack:
        ssm = await stack.enter_async_context(session.create_client("ssm", region_name=config.region))
        ec2 = await stack.enter_async_context(session.create_client("ec2", region_name=config.region))
        yield ssm, ec2


def _client_error_code(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code", "")
    return ""


async def wait_for_invocation(
    ssm: Any,
    config: RemoteConfig,
    command_id: str,
    instance_id: str,
) -> InvocationResult:
    """
    Poll a command invocation until it reaches a terminal status.

    Raises:
        DispatchError: If it does not finish within ``config.wait_timeout``
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + config.wait_timeout

    while True:
        try:
            response = await ssm.get_command_invocation(
                CommandId=command_id,
                InstanceId=instance_id,
            )
        except ClientError as e:
            # The invocation is not visible immediately after sending
            if _client_error_code(e) != "InvocationDoesNotExist":
                raise DispatchError(
                    f"Failed to read command invocation: {e}",
                    details={"command_id": command_id},
                ) from e
            response = {"Status": "Pending"}

        status = response.get("Status", "Pending")
        if status in TERMINAL_STATUSES:
            return InvocationResult(
                command_id=command_id,
                instance_id=instance_id,
                status=status,
                output=response.get("StandardOutputContent", ""),
                error_output=response.get("StandardErrorContent", ""),
                response_code=response.get("ResponseCode"),
            )

        if loop.time() >= deadline:
            raise DispatchError(
                f"Command {command_id} did not finish within {config.wait_timeout:g}s",
                details={"command_id": command_id, "status": status},
            )
        logger.debug("command_pending", command_id=command_id, status=status)
        await asyncio.sleep(config.poll_seconds)


async def send_action(
    ssm: Any,
    config: RemoteConfig,
    instance_id: str,
    action: Action,
    lines: int = DEFAULT_LOG_LINES,
    *,
    wait: bool = True,
) -> InvocationResult:
    """
    Run a host action on the instance through the command document.

    Args:
        ssm: SSM client
        config: Remote configuration
        instance_id: Target instance
        action: Action to run
        lines: Log lines for logs-* actions
        wait: Wait for the invocation and collect its output

    Raises:
        DispatchError: If sending fails or waiting times out
    """
    logger.info("action_dispatching", action=action.value, instance_id=instance_id)
    try:
        response = await ssm.send_command(
            DocumentName=config.document_name,
            Targets=[{"Key": "InstanceIds", "Values": [instance_id]}],
            Parameters={"action": [action.value], "lines": [str(lines)]},
            Comment=f"stackops {action.value}",
        )
    except (ClientError, BotoCoreError) as e:
        raise DispatchError(
            f"Failed to send {action.value}: {e}",
            details={"instance_id": instance_id, "document": config.document_name},
        ) from e

    command_id = response["Command"]["CommandId"]
    logger.info("action_dispatched", action=action.value, command_id=command_id)

    if not wait:
        return InvocationResult(
            command_id=command_id,
            instance_id=instance_id,
            status=response["Command"].get("Status", "Pending"),
        )
    return await wait_for_invocation(ssm, config, command_id, instance_id)


async def start_instance(ec2: Any, instance_id: str) -> str:
    """Start the instance; returns its new state."""
    try:
        response = await ec2.start_instances(InstanceIds=[instance_id])
    except (ClientError, BotoCoreError) as e:
        raise DispatchError(f"Failed to start {instance_id}: {e}") from e
    state = response["StartingInstances"][0]["CurrentState"]["Name"]
    logger.info("instance_starting", instance_id=instance_id, state=state)
    return state


async def stop_instance(ec2: Any, instance_id: str) -> str:
    """Stop the instance; returns its new state."""
    try:
        response = await ec2.stop_instances(InstanceIds=[instance_id])
    except (ClientError, BotoCoreError) as e:
        raise DispatchError(f"Failed to stop {instance_id}: {e}") from e
    state = response["StoppingInstances"][0]["CurrentState"]["Name"]
    logger.info("instance_stopping", instance_id=instance_id, state=state)
    return state


async def instance_state(ec2: Any, instance_id: str) -> str:
    try:
        response = await ec2.describe_instances(InstanceIds=[instance_id])
    except (ClientError, BotoCoreError) as e:
        raise DispatchError(f"Failed to describe {instance_id}: {e}") from e
    return response["Reservations"][0]["Instances"][0]["State"]["Name"]


def open_shell(
    config: RemoteConfig,
    instance_id: str,
    exec_func: Callable[[str, list], Any] = os.execvp,
) -> None:
    """
    Replace this process with an interactive session on the instance.

    Raises:
        PreconditionFailed: If the aws CLI or the session plugin is missing
    """
    if shutil.which("session-manager-plugin") is None:
        raise PreconditionFailed(
            explain_missing_session_plugin(),
            details={"tool": "session-manager-plugin"},
        )
    if shutil.which("aws") is None:
        raise PreconditionFailed(explain_missing_tool("aws"), details={"tool": "aws"})

    argv = ["aws", "ssm", "start-session", "--target", instance_id, "--region", config.region]
    logger.info("session_starting", instance_id=instance_id)
    exec_func("aws", argv)
