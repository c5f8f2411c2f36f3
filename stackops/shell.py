# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Shell - Async execution of external commands.

Docker, docker compose, git and terraform are driven as subprocesses.
Every command is awaited to completion before the next one starts. A
cancelled wait kills the child so nothing keeps running behind a
cancelled run.
"""

import asyncio
import getpass
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, List, Mapping, Protocol, Sequence

import structlog

from stackops.errors import explain_missing_tool
from stackops.exceptions import CommandError, PreconditionFailed

logger = structlog.get_logger()


@dataclass
class CommandResult:
    """Outcome of one external command."""

    argv: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    """Callable that runs a command; injectable for tests."""

    def __call__(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> Awaitable[CommandResult]: ...


async def run_command(
    argv: Sequence[str],
    *,
    check: bool = True,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """
    Run a command and capture its output.

    Args:
        argv: Program and arguments
        check: Raise CommandError on a non-zero exit status
        cwd: Working directory
        env: Extra environment variables, merged over os.environ

    Returns:
        CommandResult with decoded stdout/stderr
    """
    args = [str(a) for a in argv]
    merged_env = None
    if env:
        merged_env = os.environ.copy()
        merged_env.update(env)

    logger.debug("command_started", argv=args, cwd=str(cwd) if cwd else None)

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
        )
    except FileNotFoundError as e:
        raise CommandError(f"Command not found: {args[0]}", argv=args, stderr=str(e)) from e

    try:
        stdout_bytes, stderr_bytes = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        logger.warning("command_cancelled", argv=args)
        raise

    result = CommandResult(
        argv=args,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else "",
        stderr=stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else "",
    )

    if check and not result.ok:
        raise CommandError(
            f"Command failed with exit status {result.returncode}: {' '.join(args)}",
            argv=args,
            returncode=result.returncode,
            stderr=result.stderr,
        )

    return result


def require_tools(*tools: str) -> None:
    """Raise PreconditionFailed unless every tool is on PATH."""
    for tool in tools:
        if shutil.which(tool) is None:
            raise PreconditionFailed(explain_missing_tool(tool), details={"tool": tool})


def as_user(argv: Sequence[str], user: str | None) -> List[str]:
    """
    Prefix a command with ``sudo -u user`` when running as root for
    another account's deployment.
    """
    args = list(argv)
    if not user:
        return args
    if getpass.getuser() == user:
        return args
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return ["sudo", "-u", user, *args]
    return args
