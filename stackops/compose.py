# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Compose - Thin async wrapper around the ``docker compose`` CLI.

All commands run in the compose directory, as the deployment's owner
when the caller is root (the command document runs as root, the stack
belongs to ``ubuntu``).
"""

import json
from pathlib import Path
from typing import Dict, Iterable, List

import structlog

from stackops.config import DEFAULT_PROJECT_NAME, StackOpsConfig
from stackops.exceptions import CommandError, PreconditionFailed
from stackops.shell import CommandResult, CommandRunner, as_user, require_tools, run_command

logger = structlog.get_logger()

COMPOSE_FILES = ("compose.yaml", "compose.yml", "docker-compose.yml", "docker-compose.yaml")


def find_compose_file(compose_dir: Path) -> Path | None:
    """Return the first compose file present in the directory."""
    for name in COMPOSE_FILES:
        candidate = compose_dir / name
        if candidate.is_file():
            return candidate
    return None


async def resolve_project_name(config: StackOpsConfig, runner: CommandRunner = run_command) -> str:
    """
    Resolve the compose project name once per run.

    Order: explicit setting (CLI or COMPOSE_PROJECT_NAME), the ``name``
    compose itself reports from ``docker compose config``, then the
    stack's default name. Interpolated names, anchors and override
    files resolve as they do for ``up``.
    """
    if config.project_name:
        return config.project_name

    if find_compose_file(config.compose_dir) is None:
        return DEFAULT_PROJECT_NAME

    argv = as_user(["docker", "compose", "config", "--format", "json"], config.compose_user)
    try:
        result = await runner(argv, cwd=config.compose_dir)
        name = json.loads(result.stdout).get("name")
    except CommandError as e:
        logger.warning("compose_config_unavailable", compose_dir=str(config.compose_dir), error=str(e))
        return DEFAULT_PROJECT_NAME
    except (ValueError, AttributeError) as e:
        logger.warning("compose_config_unparsable", compose_dir=str(config.compose_dir), error=str(e))
        return DEFAULT_PROJECT_NAME

    if not isinstance(name, str) or not name:
        return DEFAULT_PROJECT_NAME
    return name


def require_host(config: StackOpsConfig) -> None:
    """
    Fail early, before any service is touched, when this host cannot run
    stack operations.

    Raises:
        PreconditionFailed: If docker is missing or the compose dir is absent
    """
    require_tools("docker")
    if not config.compose_dir.is_dir():
        raise PreconditionFailed(
            f"Compose directory not found: {config.compose_dir}",
            details={"compose_dir": str(config.compose_dir)},
        )


def parse_ps_json(output: str) -> Dict[str, str]:
    """
    Map service name to container state from ``docker compose ps --format json``.

    Compose v2 prints either one JSON array or one object per line,
    depending on version.
    """
    text = output.strip()
    if not text:
        return {}

    entries: List[dict]
    if text.startswith("["):
        entries = json.loads(text)
    else:
        entries = [json.loads(line) for line in text.splitlines() if line.strip()]

    states: Dict[str, str] = {}
    for entry in entries:
        service = entry.get("Service") or entry.get("Name")
        if service:
            states[service] = str(entry.get("State", "")).lower()
    return states


class ComposeProject:
    """One compose deployment on this host."""

    def __init__(
        self,
        compose_dir: Path,
        *,
        project_name: str | None = None,
        user: str | None = None,
        runner: CommandRunner = run_command,
    ):
        self.compose_dir = compose_dir
        self.project_name = project_name
        self.user = user
        self._run = runner

    @classmethod
    def from_config(cls, config: StackOpsConfig, runner: CommandRunner = run_command) -> "ComposeProject":
        return cls(
            config.compose_dir,
            project_name=config.project_name,
            user=config.compose_user,
            runner=runner,
        )

    async def _compose(self, *args: str, check: bool = True) -> CommandResult:
        argv = ["docker", "compose"]
        if self.project_name:
            argv += ["--project-name", self.project_name]
        argv += list(args)
        return await self._run(as_user(argv, self.user), check=check, cwd=self.compose_dir)

    async def service_states(self) -> Dict[str, str]:
        """Current state ('running', 'paused', 'exited', ...) per service."""
        result = await self._compose("ps", "--all", "--format", "json")
        return parse_ps_json(result.stdout)

    async def ps(self, *services: str) -> str:
        result = await self._compose("ps", *services)
        return result.stdout

    async def pause(self, services: Iterable[str]) -> None:
        await self._compose("pause", *services)

    async def unpause(self, services: Iterable[str]) -> None:
        await self._compose("unpause", *services)

    async def stop(self, services: Iterable[str]) -> None:
        await self._compose("stop", *services)

    async def start(self, services: Iterable[str]) -> None:
        await self._compose("start", *services)

    async def restart(self, service: str) -> None:
        await self._compose("restart", service)

    async def down(self) -> None:
        await self._compose("down")

    async def up(self) -> None:
        await self._compose("up", "-d")

    async def pull(self) -> None:
        await self._compose("pull")

    async def logs(self, service: str, tail: int = 50) -> str:
        result = await self._compose("logs", f"--tail={tail}", service, check=False)
        return result.stdout + result.stderr
