# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for stackops tests.

Provides an S3 server (moto), fake compose and volume collaborators,
a recording command runner and test configuration helpers.
"""

import os
import shutil
import socket
import tempfile
import uuid
from pathlib import Path
from typing import Dict, Generator, List, Sequence, Tuple

import pytest
import pytest_asyncio
import structlog

from stackops.archive import write_archive
from stackops.exceptions import CommandError, TargetNotFound
from stackops.shell import CommandResult
from stackops.volumes import VolumeProbe

# Dummy credentials for the local S3 server
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_SESSION_TOKEN", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

PROJECT = "llm-stack"


@pytest.fixture(autouse=True)
def _reset_structlog() -> Generator[None, None, None]:
    """Drop logging config bound to a CliRunner stream once the test ends."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(scope="session")
def s3_endpoint() -> Generator[str, None, None]:
    """
    Run moto's S3 server for the whole session.

    aiobotocore talks HTTP to it like to real S3.
    """
    from moto.server import ThreadedMotoServer

    port = _free_port()
    server = ThreadedMotoServer(ip_address="127.0.0.1", port=port)
    server.start()
    yield f"http://127.0.0.1:{port}"
    server.stop()


@pytest_asyncio.fixture
async def s3_client(s3_endpoint: str):
    """aiobotocore S3 client bound to the moto server."""
    from aiobotocore.session import get_session

    session = get_session()
    async with session.create_client(
        "s3",
        region_name="us-east-1",
        endpoint_url=s3_endpoint,
    ) as client:
        yield client


@pytest_asyncio.fixture
async def store(s3_client):
    """ObjectStore over a fresh, empty bucket."""
    from stackops.store import ObjectStore

    bucket = f"test-bucket-{uuid.uuid4().hex[:12]}"
    await s3_client.create_bucket(Bucket=bucket)
    yield ObjectStore(s3_client, bucket)


@pytest.fixture
def test_config(temp_dir: Path):
    """Host configuration pointing at temporary directories."""
    from stackops.config import StackOpsConfig

    compose_dir = temp_dir / "compose"
    compose_dir.mkdir()
    return StackOpsConfig(
        bucket="test-bucket",
        region="us-east-1",
        compose_dir=compose_dir,
        app_dir=temp_dir,
        project_name=PROJECT,
        scratch_root=temp_dir / "scratch",
        journal_path=temp_dir / "journal.db",
        compose_user=None,
        settle_seconds=0,
    )


class FakeCompose:
    """
    In-memory stand-in for ComposeProject.

    Records every call as (method, args) and tracks service states.
    """

    def __init__(self, states: Dict[str, str] | None = None, fail_on: Sequence[str] = ()):
        self.states = dict(states or {"caddy": "running", "openwebui": "running", "litellm": "running"})
        self.fail_on = set(fail_on)
        self.calls: List[Tuple[str, tuple]] = []

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, args))
        if method in self.fail_on:
            raise CommandError(
                f"docker compose {method} failed",
                argv=["docker", "compose", method],
                returncode=1,
                stderr=f"{method} failed",
            )

    def methods(self) -> List[str]:
        return [method for method, _ in self.calls]

    async def service_states(self) -> Dict[str, str]:
        self._record("service_states")
        return dict(self.states)

    async def ps(self, *services: str) -> str:
        self._record("ps", *services)
        return "\n".join(f"{name}  {state}" for name, state in self.states.items())

    async def pause(self, services) -> None:
        services = list(services)
        self._record("pause", *services)
        for service in services:
            self.states[service] = "paused"

    async def unpause(self, services) -> None:
        services = list(services)
        self._record("unpause", *services)
        for service in services:
            self.states[service] = "running"

    async def stop(self, services) -> None:
        services = list(services)
        self._record("stop", *services)
        for service in services:
            self.states[service] = "exited"

    async def start(self, services) -> None:
        services = list(services)
        self._record("start", *services)
        for service in services:
            self.states[service] = "running"

    async def restart(self, service: str) -> None:
        self._record("restart", service)

    async def down(self) -> None:
        self._record("down")
        for service in self.states:
            self.states[service] = "exited"

    async def up(self) -> None:
        self._record("up")
        for service in self.states:
            self.states[service] = "running"

    async def pull(self) -> None:
        self._record("pull")

    async def logs(self, service: str, tail: int = 50) -> str:
        self._record("logs", service, tail)
        return f"{service} log line"


class FakeVolumes:
    """
    Volumes backed by plain directories under root.

    archive_to and replace_contents use the real archive codec and
    filesystem copies, so contents survive a backup/restore round trip
    byte for byte.
    """

    def __init__(self, root: Path, fail_archive: Sequence[str] = ()):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.fail_archive = set(fail_archive)
        self.mutations: List[Tuple[str, str]] = []

    def path(self, volume_id: str) -> Path:
        return self.root / volume_id

    def create(self, volume_id: str, files: Dict[str, bytes] | None = None) -> Path:
        path = self.path(volume_id)
        path.mkdir(parents=True, exist_ok=True)
        for name, content in (files or {}).items():
            file_path = path / name
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(content)
        return path

    async def exists(self, volume_id: str) -> bool:
        return self.path(volume_id).is_dir()

    async def require(self, volume_id: str) -> None:
        if not await self.exists(volume_id):
            raise TargetNotFound(f"Volume not found: {volume_id}", details={"volume": volume_id})

    async def list_volumes(self, name_filter: str | None = None) -> List[str]:
        names = sorted(p.name for p in self.root.iterdir() if p.is_dir())
        if name_filter:
            names = [n for n in names if name_filter in n]
        return names

    async def probe(self, volume_id: str) -> VolumeProbe:
        files = [p for p in self.path(volume_id).rglob("*") if p.is_file()]
        return VolumeProbe(file_count=len(files), human_size="4.0K")

    async def archive_to(self, volume_id: str, dest_dir: Path, filename: str) -> Path:
        if volume_id in self.fail_archive:
            raise CommandError(
                "docker run failed",
                argv=["docker", "run"],
                returncode=1,
                stderr="tar: cannot read",
            )
        archive_path = dest_dir / filename
        write_archive(self.path(volume_id), archive_path)
        return archive_path

    async def replace_contents(self, volume_id: str, source_dir: Path, *, has_entries: bool = True) -> None:
        self.mutations.append(("replace", volume_id))
        path = self.path(volume_id)
        shutil.rmtree(path, ignore_errors=True)
        path.mkdir(parents=True)
        if has_entries:
            shutil.copytree(source_dir, path, symlinks=True, dirs_exist_ok=True)


class RecordingRunner:
    """
    Command runner that records argv and answers from canned responses.

    Responses are matched by argv prefix; unmatched commands succeed with
    empty output.
    """

    def __init__(self, responses: Dict[Tuple[str, ...], CommandResult | Exception] | None = None):
        self.responses = dict(responses or {})
        self.calls: List[List[str]] = []
        self.cwds: List[Path | None] = []

    def respond(self, prefix: Sequence[str], stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        self.responses[tuple(prefix)] = CommandResult(list(prefix), returncode, stdout, stderr)

    def fail(self, prefix: Sequence[str], exc: Exception) -> None:
        self.responses[tuple(prefix)] = exc

    async def __call__(self, argv, *, check: bool = True, cwd: Path | None = None, env=None) -> CommandResult:
        args = [str(a) for a in argv]
        self.calls.append(args)
        self.cwds.append(cwd)

        response = None
        best = -1
        for prefix, candidate in self.responses.items():
            if tuple(args[: len(prefix)]) == prefix and len(prefix) > best:
                response, best = candidate, len(prefix)

        if isinstance(response, Exception):
            raise response
        result = CommandResult(args, 0, "", "")
        if response is not None:
            result = CommandResult(args, response.returncode, response.stdout, response.stderr)

        if check and not result.ok:
            raise CommandError(
                f"Command failed with exit status {result.returncode}: {' '.join(args)}",
                argv=args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result


@pytest.fixture
def fake_compose() -> FakeCompose:
    return FakeCompose()


@pytest.fixture
def fake_volumes(temp_dir: Path) -> FakeVolumes:
    return FakeVolumes(temp_dir / "volumes")


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


def tree_snapshot(root: Path) -> Dict[str, bytes | None]:
    """Relative path -> file bytes (None for directories)."""
    snapshot: Dict[str, bytes | None] = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        snapshot[rel] = path.read_bytes() if path.is_file() and not path.is_symlink() else None
    return snapshot
