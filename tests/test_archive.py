# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Archive codec tests.

Extraction must stay inside the destination directory whatever the
archive contains; a hostile archive is rejected before anything is
written.
"""

import io
import os
import tarfile
from pathlib import Path

import pytest

from stackops.archive import (
    extract_archive,
    inspect_archive,
    read_archive,
    scratch_dir,
    summarize_archive,
    write_archive,
)
from stackops.exceptions import ArchiveError, UnsafeArchiveMember

from conftest import tree_snapshot


def _build_tar(path: Path, members) -> None:
    """Write a gzip tar from (TarInfo, bytes | None) pairs."""
    with tarfile.open(path, "w:gz") as tar:
        for info, data in members:
            if data is not None:
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
            else:
                tar.addfile(info)


def _file(name: str, data: bytes = b"x"):
    info = tarfile.TarInfo(name)
    info.type = tarfile.REGTYPE
    return info, data


def _symlink(name: str, target: str):
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    return info, None


def _hardlink(name: str, target: str):
    info = tarfile.TarInfo(name)
    info.type = tarfile.LNKTYPE
    info.linkname = target
    return info, None


# ============================================================================
# Writing and reading
# ============================================================================

def test_round_trip_preserves_contents(temp_dir: Path):
    """Files, nested directories and hidden entries come back unchanged."""
    source = temp_dir / "source"
    (source / "nested" / "deeper").mkdir(parents=True)
    (source / "webui.db").write_bytes(b"\x00\x01sqlite" * 100)
    (source / ".hidden").write_text("secret")
    (source / "nested" / "deeper" / "cert.pem").write_text("-----BEGIN-----")
    (source / "empty.txt").write_bytes(b"")

    archive = temp_dir / "out" / "data.tar.gz"
    write_archive(source, archive)

    dest = temp_dir / "dest"
    summary = read_archive(archive, dest)

    assert tree_snapshot(dest) == tree_snapshot(source)
    assert summary.file_count == 4
    assert summary.entry_count == 6


def test_round_trip_preserves_modes_and_symlinks(temp_dir: Path):
    source = temp_dir / "source"
    source.mkdir()
    script = source / "run.sh"
    script.write_text("#!/bin/sh\n")
    os.chmod(script, 0o750)
    os.symlink("run.sh", source / "current")

    archive = temp_dir / "data.tar.gz"
    write_archive(source, archive)
    dest = temp_dir / "dest"
    read_archive(archive, dest)

    assert (dest / "run.sh").stat().st_mode & 0o777 == 0o750
    assert (dest / "current").is_symlink()
    assert os.readlink(dest / "current") == "run.sh"


def test_empty_directory_round_trip(temp_dir: Path):
    """An empty volume yields a valid archive that restores to nothing."""
    source = temp_dir / "empty"
    source.mkdir()
    archive = temp_dir / "empty.tar.gz"

    assert write_archive(source, archive) == 0
    assert inspect_archive(archive).is_empty

    dest = temp_dir / "dest"
    summary = read_archive(archive, dest)
    assert summary.is_empty
    assert list(dest.iterdir()) == []


def test_dot_root_member_is_not_counted(temp_dir: Path):
    """Archives made with ``tar -C dir .`` carry a "." member."""
    archive = temp_dir / "dot.tar.gz"
    root = tarfile.TarInfo(".")
    root.type = tarfile.DIRTYPE
    root.mode = 0o755
    _build_tar(archive, [(root, None), _file("./a.txt", b"a"), _file("./b/c.txt", b"c")])

    summary = inspect_archive(archive)
    assert summary.file_count == 2
    assert summary.entry_count == 2
    assert summary.sample == ["a.txt", "c.txt"]


def test_sample_is_limited_to_five_names(temp_dir: Path):
    source = temp_dir / "many"
    source.mkdir()
    for i in range(8):
        (source / f"file{i}.txt").write_text(str(i))
    archive = temp_dir / "many.tar.gz"
    write_archive(source, archive)

    summary = inspect_archive(archive)
    assert summary.file_count == 8
    assert len(summary.sample) == 5


def test_write_archive_rejects_missing_source(temp_dir: Path):
    with pytest.raises(ArchiveError):
        write_archive(temp_dir / "missing", temp_dir / "x.tar.gz")


def test_corrupt_archive_raises_archive_error(temp_dir: Path):
    archive = temp_dir / "corrupt.tar.gz"
    archive.write_bytes(b"this is not gzip")

    with pytest.raises(ArchiveError):
        inspect_archive(archive)
    with pytest.raises(ArchiveError):
        read_archive(archive, temp_dir / "dest")


# ============================================================================
# Path traversal guard
# ============================================================================

@pytest.mark.parametrize(
    "members",
    [
        [_file("../evil.txt")],
        [_file("a/../../evil.txt")],
        [_file("/etc/evil.txt")],
        [_symlink("link", "/etc"), _file("link/passwd")],
        [_symlink("link", "../outside"), _file("link")],
    ],
    ids=["parent", "nested-parent", "absolute", "beneath-symlink", "replaces-symlink"],
)
def test_unsafe_members_are_rejected(temp_dir: Path, members):
    """
    CRITICAL: no member may be written outside the destination.
    """
    archive = temp_dir / "evil.tar.gz"
    _build_tar(archive, [_file("good.txt", b"ok")] + members)

    dest = temp_dir / "dest"
    with pytest.raises(UnsafeArchiveMember):
        read_archive(archive, dest)

    # Validation happens before extraction: nothing was written
    assert list(dest.iterdir()) == []
    assert not (temp_dir / "evil.txt").exists()


def test_hardlink_outside_root_is_rejected(temp_dir: Path):
    archive = temp_dir / "hardlink.tar.gz"
    _build_tar(archive, [_hardlink("passwd", "../../etc/passwd")])

    with pytest.raises(UnsafeArchiveMember):
        read_archive(archive, temp_dir / "dest")


def test_hardlink_through_symlink_cannot_redirect_a_later_write(temp_dir: Path):
    """
    CRITICAL: a symlink out of the root, a hard link reached through it and
    a regular file reusing the link's name must not overwrite the target.
    """
    outside = temp_dir / "outside"
    outside.mkdir()
    (outside / "secret").write_text("original")

    archive = temp_dir / "chain.tar.gz"
    _build_tar(
        archive,
        [
            _symlink("a", str(outside)),
            _hardlink("b", "a/secret"),
            _file("b", b"pwned"),
        ],
    )

    dest = temp_dir / "dest"
    with pytest.raises(UnsafeArchiveMember) as exc_info:
        read_archive(archive, dest)

    assert exc_info.value.details["member"] == "b"
    assert (outside / "secret").read_text() == "original"
    assert list(dest.iterdir()) == []


def test_regular_file_reusing_a_hardlink_name_is_rejected(temp_dir: Path):
    archive = temp_dir / "reuse.tar.gz"
    _build_tar(
        archive,
        [
            _file("real.txt", b"real"),
            _hardlink("b", "real.txt"),
            _file("b", b"overwritten"),
        ],
    )

    dest = temp_dir / "dest"
    with pytest.raises(UnsafeArchiveMember) as exc_info:
        read_archive(archive, dest)

    assert exc_info.value.details["reason"] == "replaces_link"
    assert list(dest.iterdir()) == []


def test_hardlink_inside_root_is_allowed(temp_dir: Path):
    archive = temp_dir / "ok.tar.gz"
    _build_tar(archive, [_file("real.txt", b"real"), _hardlink("copy.txt", "real.txt")])

    dest = temp_dir / "dest"
    read_archive(archive, dest)
    assert (dest / "copy.txt").read_bytes() == b"real"
    assert (dest / "copy.txt").stat().st_ino == (dest / "real.txt").stat().st_ino


def test_extraction_filter_rejects_absolute_symlinks(temp_dir: Path):
    """Absolute symlinks pass the member check but not the extraction filter."""
    archive = temp_dir / "abs.tar.gz"
    _build_tar(archive, [_symlink("etc-link", "/etc")])

    with pytest.raises(UnsafeArchiveMember) as exc_info:
        read_archive(archive, temp_dir / "dest")
    assert exc_info.value.details["member"] == "etc-link"


def test_device_nodes_are_rejected(temp_dir: Path):
    archive = temp_dir / "device.tar.gz"
    dev = tarfile.TarInfo("null")
    dev.type = tarfile.CHRTYPE
    dev.devmajor, dev.devminor = 1, 3
    _build_tar(archive, [(dev, None)])

    with pytest.raises(UnsafeArchiveMember):
        read_archive(archive, temp_dir / "dest")


def test_relative_symlink_inside_root_is_allowed(temp_dir: Path):
    archive = temp_dir / "ok.tar.gz"
    _build_tar(archive, [_file("data/real.txt", b"real"), _symlink("alias", "data/real.txt")])

    dest = temp_dir / "dest"
    read_archive(archive, dest)
    assert (dest / "alias").read_bytes() == b"real"


# ============================================================================
# Async wrappers and scratch directories
# ============================================================================

@pytest.mark.asyncio
async def test_async_wrappers(temp_dir: Path):
    source = temp_dir / "source"
    source.mkdir()
    (source / "a.txt").write_text("a")
    archive = temp_dir / "a.tar.gz"

    assert write_archive(source, archive) == 1
    assert (await summarize_archive(archive)).file_count == 1
    summary = await extract_archive(archive, temp_dir / "dest")
    assert summary.sample == ["a.txt"]
    assert (temp_dir / "dest" / "a.txt").read_text() == "a"


@pytest.mark.asyncio
async def test_scratch_dir_is_removed_on_success_and_error(temp_dir: Path):
    async with scratch_dir(temp_dir, "ok") as path:
        (path / "file").write_text("x")
        kept = path
    assert not kept.exists()

    with pytest.raises(RuntimeError):
        async with scratch_dir(temp_dir, "boom") as path:
            failed = path
            raise RuntimeError("boom")
    assert not failed.exists()
