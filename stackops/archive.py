# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Archive Codec - gzip tar archives of volume trees.

Archives hold the children of a volume root under relative names
("./file", "./dir/file" or "file"), hidden entries included. Symlinks are
stored as links and never followed. Extraction validates every member
before writing anything, so a hostile archive is rejected as a whole.
"""

import asyncio
import os
import posixpath
import shutil
import tarfile
import tempfile
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, List, Set

import structlog

from stackops.exceptions import ArchiveError, UnsafeArchiveMember

logger = structlog.get_logger()

# Single worker: targets are processed one at a time
_executor = ThreadPoolExecutor(max_workers=1)

SAMPLE_SIZE = 5


@dataclass
class ArchiveSummary:
    """What an archive contains."""

    entry_count: int = 0
    file_count: int = 0
    total_bytes: int = 0
    sample: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.entry_count == 0


def _normalize(name: str) -> str:
    return posixpath.normpath(name) if name else "."


def _summarize(members: List[tarfile.TarInfo]) -> ArchiveSummary:
    summary = ArchiveSummary()
    for member in members:
        if _normalize(member.name) == ".":
            continue
        summary.entry_count += 1
        if member.isfile():
            summary.file_count += 1
            summary.total_bytes += member.size
            if len(summary.sample) < SAMPLE_SIZE:
                summary.sample.append(posixpath.basename(_normalize(member.name)))
    return summary


def _check_members(members: List[tarfile.TarInfo], archive_path: Path) -> None:
    """
    Reject members that could write outside the extraction root.

    Rejected: absolute names, names escaping via "..", anything stored
    beneath a symlink member, a later member reusing a link member's name,
    hard links whose source is outside the root or reached through a
    symlink, and character/block devices.
    """
    symlinks: Set[str] = set()
    links: Set[str] = set()

    def unsafe(member: tarfile.TarInfo, reason: str) -> UnsafeArchiveMember:
        return UnsafeArchiveMember(
            f"Unsafe path in archive: {member.name}",
            details={"archive": str(archive_path), "member": member.name, "reason": reason},
        )

    def through_symlink(norm: str) -> bool:
        parts = PurePosixPath(norm).parts
        return any("/".join(parts[:i]) in symlinks for i in range(1, len(parts)))

    for member in members:
        name = member.name
        if name.startswith("/") or name.startswith("\\") or (len(name) > 1 and name[1] == ":"):
            raise unsafe(member, "absolute_path")

        norm = _normalize(name)
        if norm == ".." or norm.startswith("../"):
            raise unsafe(member, "parent_escape")

        if through_symlink(norm):
            raise unsafe(member, "beneath_symlink")

        if norm in links:
            raise unsafe(member, "replaces_link")

        if member.ischr() or member.isblk():
            raise unsafe(member, "device_node")

        if member.islnk():
            link = member.linkname
            if link.startswith("/"):
                raise unsafe(member, "hardlink_absolute")
            link_norm = _normalize(link)
            if link_norm == ".." or link_norm.startswith("../"):
                raise unsafe(member, "hardlink_escape")
            if link_norm in symlinks:
                raise unsafe(member, "hardlink_to_symlink")
            if through_symlink(link_norm):
                raise unsafe(member, "hardlink_through_symlink")

        if member.issym():
            symlinks.add(norm)
        if member.issym() or member.islnk():
            links.add(norm)


def _volume_filter(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo | None:
    """tarfile's "data" filter, keeping numeric ownership of volume files."""
    filtered = tarfile.data_filter(member, dest_path)
    if filtered is None:
        return None
    return filtered.replace(uid=member.uid, gid=member.gid, deep=False)


def write_archive(source_dir: Path, archive_path: Path) -> int:
    """
    Write the children of source_dir into a gzip tar archive.

    An empty directory produces a valid archive with zero members.

    Args:
        source_dir: Directory whose contents are archived
        archive_path: Destination file

    Returns:
        Number of members written
    """
    if not source_dir.is_dir():
        raise ArchiveError(
            f"Archive source is not a directory: {source_dir}",
            details={"source_dir": str(source_dir)},
        )

    try:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, "w:gz") as tar:
            for child in sorted(source_dir.iterdir()):
                tar.add(child, arcname=child.name, recursive=True)
            count = len(tar.getmembers())
    except OSError as e:
        raise ArchiveError(
            f"Failed to write archive: {e}",
            details={"source_dir": str(source_dir), "archive": str(archive_path)},
        ) from e

    logger.debug("archive_written", archive=str(archive_path), members=count)
    return count


def inspect_archive(archive_path: Path) -> ArchiveSummary:
    """
    Read an archive's member list without extracting it.

    Raises:
        ArchiveError: If the file is not a readable gzip tar
    """
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            return _summarize(tar.getmembers())
    except (OSError, tarfile.TarError, EOFError) as e:
        raise ArchiveError(
            f"Archive is not readable: {e}",
            details={"archive": str(archive_path)},
        ) from e


def read_archive(archive_path: Path, dest_dir: Path) -> ArchiveSummary:
    """
    Extract an archive into dest_dir after validating every member.

    Numeric ownership (when running as root) and timestamps are preserved.
    File modes pass through tarfile's "data" filter, which drops group and
    other write bits and special bits. A zero-entry archive leaves dest_dir
    empty.

    Raises:
        UnsafeArchiveMember: If any member would land outside dest_dir
        ArchiveError: If the archive cannot be read
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            members = tar.getmembers()
            _check_members(members, archive_path)
            tar.extractall(
                dest_dir,
                members=members,
                numeric_owner=True,
                filter=_volume_filter,
            )
            summary = _summarize(members)
    except UnsafeArchiveMember:
        raise
    except tarfile.FilterError as e:
        raise UnsafeArchiveMember(
            f"Unsafe path in archive: {e.tarinfo.name}",
            details={"archive": str(archive_path), "member": e.tarinfo.name, "reason": type(e).__name__},
        ) from e
    except (OSError, tarfile.TarError, EOFError) as e:
        raise ArchiveError(
            f"Failed to extract archive: {e}",
            details={"archive": str(archive_path), "dest_dir": str(dest_dir)},
        ) from e

    logger.debug(
        "archive_extracted",
        archive=str(archive_path),
        entries=summary.entry_count,
        files=summary.file_count,
    )
    return summary


async def _in_thread(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, func, *args)


async def summarize_archive(archive_path: Path) -> ArchiveSummary:
    """Async wrapper for inspect_archive()."""
    return await _in_thread(inspect_archive, archive_path)


async def extract_archive(archive_path: Path, dest_dir: Path) -> ArchiveSummary:
    """Async wrapper for read_archive()."""
    return await _in_thread(read_archive, archive_path, dest_dir)


@asynccontextmanager
async def scratch_dir(root: Path, prefix: str) -> AsyncIterator[Path]:
    """
    Uniquely named work directory, removed when the block exits.

    Removal runs on success, error and cancellation alike.
    """
    root.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"stackops_{prefix}_", dir=root))
    # Helper containers write into it as another uid
    os.chmod(path, 0o777)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("scratch_dir_removed", path=str(path))
