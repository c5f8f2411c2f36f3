# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Volume Accessor - Read and write compose volumes via helper containers.

Volumes are accessed through disposable helper containers, so a volume
can be archived or restored whatever state its owning service is in.
Every helper gets a unique name and is force-removed when the operation
ends, including on failure and cancellation.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List

import structlog
from ulid import ULID

from stackops.config import StackOpsConfig
from stackops.exceptions import CommandError, TargetNotFound
from stackops.shell import CommandRunner, as_user, run_command

logger = structlog.get_logger()

HELPER_LABEL = "io.stackops.helper=true"


@dataclass
class VolumeProbe:
    """Best-effort description of a volume's contents."""

    file_count: int | None
    human_size: str

    @property
    def known(self) -> bool:
        return self.file_count is not None


UNKNOWN_PROBE = VolumeProbe(file_count=None, human_size="unknown")


def _helper_name(purpose: str) -> str:
    return f"stackops-{purpose}-{str(ULID()).lower()}"


class VolumeAccessor:
    """Docker volume operations for one host."""

    def __init__(
        self,
        *,
        helper_image: str = "ubuntu:24.04",
        user: str | None = None,
        runner: CommandRunner = run_command,
    ):
        self.helper_image = helper_image
        self.user = user
        self._run = runner

    @classmethod
    def from_config(cls, config: StackOpsConfig, runner: CommandRunner = run_command) -> "VolumeAccessor":
        return cls(helper_image=config.helper_image, user=config.compose_user, runner=runner)

    async def _docker(self, *args: str, check: bool = True):
        return await self._run(as_user(["docker", *args], self.user), check=check)

    async def _remove_helper(self, name: str) -> None:
        try:
            await self._docker("rm", "-f", name, check=False)
        except CommandError as e:
            logger.warning("helper_remove_failed", container=name, error=str(e))

    @asynccontextmanager
    async def _helper(self, purpose: str) -> AsyncIterator[str]:
        """Reserve a helper container name; the container is removed on exit."""
        name = _helper_name(purpose)
        try:
            yield name
        finally:
            await self._remove_helper(name)

    async def exists(self, volume_id: str) -> bool:
        result = await self._docker("volume", "inspect", volume_id, check=False)
        return result.ok

    async def require(self, volume_id: str) -> None:
        """Raise TargetNotFound if the volume does not exist."""
        if not await self.exists(volume_id):
            raise TargetNotFound(
                f"Volume not found: {volume_id}",
                details={"volume": volume_id},
            )

    async def list_volumes(self, name_filter: str | None = None) -> List[str]:
        args = ["volume", "ls", "--format", "{{.Name}}"]
        if name_filter:
            args += ["--filter", f"name={name_filter}"]
        result = await self._docker(*args, check=False)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def probe(self, volume_id: str) -> VolumeProbe:
        """
        Count files and measure a volume, read-only.

        Diagnostic only: any failure yields an "unknown" probe.
        """
        script = "find /source -type f | wc -l; du -sh /source | cut -f1"
        async with self._helper("probe") as name:
            try:
                result = await self._docker(
                    "run", "--rm", "--name", name, "--label", HELPER_LABEL,
                    "-v", f"{volume_id}:/source:ro",
                    self.helper_image,
                    "sh", "-c", script,
                )
            except CommandError as e:
                logger.warning("volume_probe_failed", volume=volume_id, error=str(e))
                return UNKNOWN_PROBE

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        try:
            return VolumeProbe(file_count=int(lines[0]), human_size=lines[1])
        except (IndexError, ValueError):
            logger.warning("volume_probe_unparsable", volume=volume_id, output=result.stdout)
            return UNKNOWN_PROBE

    async def archive_to(self, volume_id: str, dest_dir: Path, filename: str) -> Path:
        """
        Write a gzip tar of the volume root into dest_dir/filename.

        The helper mounts the volume read-only and archives it with
        relative paths, hidden entries included. An empty volume yields a
        valid archive.

        Raises:
            CommandError: If the helper fails
        """
        async with self._helper("archive") as name:
            await self._docker(
                "run", "--rm", "--name", name, "--label", HELPER_LABEL,
                "-v", f"{volume_id}:/source:ro",
                "-v", f"{dest_dir}:/backup",
                self.helper_image,
                "tar", "czf", f"/backup/{filename}", "-C", "/source", ".",
            )
        return dest_dir / filename

    async def replace_contents(self, volume_id: str, source_dir: Path, *, has_entries: bool = True) -> None:
        """
        Recreate a volume and fill it with the contents of source_dir.

        The existing volume is removed first; this cannot be undone. With
        has_entries False the volume is recreated empty.

        Raises:
            CommandError: If recreating or copying fails
        """
        await self._docker("volume", "rm", volume_id, check=False)
        await self._docker("volume", "create", volume_id)
        logger.info("volume_recreated", volume=volume_id)

        if not has_entries:
            return

        async with self._helper("restore") as name:
            await self._docker(
                "create", "--name", name, "--label", HELPER_LABEL,
                "-v", f"{volume_id}:/target",
                self.helper_image,
            )
            await self._docker("cp", "-a", f"{source_dir}/.", f"{name}:/target/")
