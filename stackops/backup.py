# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Backup - Archive compose volumes into the backup bucket.

A run:
1. Resolves the compose project name and the bucket
2. Captures one timestamp shared by every archive of the run
3. Quiesces the services owning the requested targets
4. For each target, one at a time: probe, archive, upload, verify
5. Resumes the quiesced services (always, also on error or cancellation)
6. Lists recent backups and optionally purges expired ones

One target failing never stops the others; failures are counted and
turn into a non-zero exit code.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import List

import structlog
from ulid import ULID

from stackops.archive import scratch_dir, summarize_archive
from stackops.catalog import list_backups, purge_expired_backups
from stackops.compose import ComposeProject, require_host, resolve_project_name
from stackops.config import StackOpsConfig
from stackops.exceptions import (
    ArchiveError,
    CommandError,
    ObjectNotFound,
    StackOpsError,
    StoreUnavailable,
    TargetNotFound,
    TransferFailed,
)
from stackops.journal import RunJournal
from stackops.quiesce import Quiescer
from stackops.shell import CommandRunner, run_command
from stackops.store import ObjectInfo, ObjectStore, human_size, open_store_for
from stackops.targets import ARCHIVE_SUFFIX, Target, backup_key, new_timestamp, owning_services
from stackops.terraform import resolve_bucket
from stackops.volumes import VolumeAccessor

logger = structlog.get_logger()


class TargetStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TargetOutcome:
    """What happened to one target in a run."""

    target: str
    status: TargetStatus
    key: str | None = None
    size: int = 0
    reason: str | None = None


@dataclass
class BackupResult:
    """Result of a backup run."""

    run_id: str  # ULID
    timestamp: str  # YYYYMMDD_HHMMSS shared by all keys of the run
    bucket: str
    project_name: str
    outcomes: List[TargetOutcome] = field(default_factory=list)
    quiesced: List[str] = field(default_factory=list)
    resume_failures: List[str] = field(default_factory=list)
    recent_objects: List[ObjectInfo] = field(default_factory=list)
    purged_keys: List[str] = field(default_factory=list)
    listing_error: str | None = None  # listing the bucket failed after the uploads
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def succeeded_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == TargetStatus.OK)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == TargetStatus.FAILED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == TargetStatus.SKIPPED)

    @property
    def exit_code(self) -> int:
        if self.failed_count or self.skipped_count or self.resume_failures or self.listing_error:
            return 1
        return 0


async def backup_target(
    config: StackOpsConfig,
    target: Target,
    *,
    project_name: str,
    timestamp: str,
    store: ObjectStore,
    volumes: VolumeAccessor,
) -> TargetOutcome:
    """
    Archive one target's volume and upload it.

    Per-target errors are returned as outcomes, never raised.
    """
    volume_id = target.volume_id(project_name)
    key = backup_key(config.key_prefix, target.short_name, timestamp)
    log = logger.bind(target=target.short_name, volume=volume_id)

    try:
        await volumes.require(volume_id)
    except TargetNotFound as e:
        log.warning("backup_target_skipped", reason=e.message)
        return TargetOutcome(target.short_name, TargetStatus.SKIPPED, key=key, reason=e.message)

    probe = await volumes.probe(volume_id)
    log.info(
        "volume_probed",
        files=probe.file_count if probe.known else "unknown",
        size=probe.human_size,
    )

    try:
        async with scratch_dir(config.scratch_root, f"backup_{target.short_name}") as work:
            filename = f"{target.short_name}_{timestamp}{ARCHIVE_SUFFIX}"
            archive_path = await volumes.archive_to(volume_id, work, filename)
            summary = await summarize_archive(archive_path)
            log.info(
                "volume_archived",
                entries=summary.entry_count,
                files=summary.file_count,
                archive_size=archive_path.stat().st_size,
            )
            size = await store.upload(archive_path, key)
    except (CommandError, ArchiveError, TransferFailed, OSError) as e:
        log.error("backup_target_failed", key=key, error=str(e))
        return TargetOutcome(target.short_name, TargetStatus.FAILED, key=key, reason=str(e))

    # Verification is advisory; the upload result is authoritative
    try:
        stored = await store.head(key)
        if stored != size:
            log.warning("backup_size_mismatch", key=key, uploaded=size, stored=stored)
    except (ObjectNotFound, StoreUnavailable) as e:
        log.warning("backup_verify_failed", key=key, error=str(e))

    log.info("backup_target_uploaded", key=key, size=human_size(size))
    return TargetOutcome(target.short_name, TargetStatus.OK, key=key, size=size)


async def _run_backup(
    config: StackOpsConfig,
    *,
    bucket: str,
    project_name: str,
    store: ObjectStore,
    compose: ComposeProject,
    volumes: VolumeAccessor,
    now: datetime | None,
) -> BackupResult:
    run_id = str(ULID())
    started = datetime.now(UTC)
    timestamp = new_timestamp(now)
    names = [t.short_name for t in config.targets]

    result = BackupResult(
        run_id=run_id,
        timestamp=timestamp,
        bucket=bucket,
        project_name=project_name,
    )

    logger.info(
        "backup_started",
        run_id=run_id,
        timestamp=timestamp,
        bucket=bucket,
        project=project_name,
        targets=names,
        quiesce_mode=config.quiesce_mode.value,
    )

    async with RunJournal(config.journal_path, run_id, "backup") as journal:
        await journal.started(timestamp, names)

        try:
            status = await compose.ps()
            logger.info("service_status", output=status.strip())
        except CommandError as e:
            logger.warning("service_status_unavailable", error=str(e))

        try:
            guard = await Quiescer(compose).quiesce(
                owning_services(config.targets), config.quiesce_mode
            )
        except StackOpsError as e:
            logger.error("quiesce_failed", error=str(e))
            await journal.completed(1)
            raise

        result.quiesced = list(guard.changed)
        async with guard:
            for target in config.targets:
                outcome = await backup_target(
                    config,
                    target,
                    project_name=project_name,
                    timestamp=timestamp,
                    store=store,
                    volumes=volumes,
                )
                result.outcomes.append(outcome)
                if outcome.reason:
                    result.errors.append(f"{outcome.target}: {outcome.reason}")
                await journal.target(
                    outcome.target,
                    outcome.status.value,
                    key=outcome.key,
                    size=outcome.size,
                    error=outcome.reason,
                )
        result.resume_failures = list(guard.failed)

        try:
            result.recent_objects = await list_backups(
                store, config.key_prefix, config.targets, limit=config.list_limit
            )
            for obj in result.recent_objects:
                logger.info(
                    "backup_listed",
                    key=obj.key,
                    size=human_size(obj.size),
                    last_modified=obj.last_modified.isoformat(),
                )
        except StoreUnavailable as e:
            result.listing_error = str(e)
            result.errors.append(str(e))
            logger.error("backup_listing_failed", error=str(e))

        # Purging is best effort and never fails the run
        if config.purge_expired and result.listing_error is None:
            try:
                result.purged_keys = await purge_expired_backups(
                    store, config.key_prefix, config.retention_days
                )
            except StoreUnavailable as e:
                result.errors.append(str(e))
                logger.warning("backup_purge_skipped", error=str(e))

        result.duration_seconds = (datetime.now(UTC) - started).total_seconds()
        await journal.completed(result.exit_code)

    logger.info(
        "backup_completed",
        run_id=run_id,
        timestamp=timestamp,
        succeeded=result.succeeded_count,
        failed=result.failed_count,
        skipped=result.skipped_count,
        resume_failures=result.resume_failures,
        exit_code=result.exit_code,
        duration=result.duration_seconds,
    )
    return result


async def run_backup(
    config: StackOpsConfig,
    *,
    store: ObjectStore | None = None,
    compose: ComposeProject | None = None,
    volumes: VolumeAccessor | None = None,
    runner: CommandRunner = run_command,
    now: datetime | None = None,
) -> BackupResult:
    """
    Back up every configured target.

    Collaborators default to the real docker/compose/S3 implementations;
    tests pass their own.

    Args:
        config: Host configuration
        store: Open object store (opened from config when omitted)
        compose: Compose project (built from config when omitted)
        volumes: Volume accessor (built from config when omitted)
        runner: Command runner for the default collaborators
        now: Clock override for the run timestamp

    Returns:
        BackupResult; ``exit_code`` is non-zero if any target failed

    Raises:
        PreconditionFailed: Missing docker, compose dir or bucket
        StackOpsError: If services could not be quiesced
    """
    if compose is None or volumes is None:
        require_host(config)
    compose = compose or ComposeProject.from_config(config, runner)
    volumes = volumes or VolumeAccessor.from_config(config, runner)
    project_name = await resolve_project_name(config, runner)

    if store is not None:
        return await _run_backup(
            config,
            bucket=store.bucket,
            project_name=project_name,
            store=store,
            compose=compose,
            volumes=volumes,
            now=now,
        )

    bucket = await resolve_bucket(config, runner)
    async with open_store_for(config, bucket) as opened:
        return await _run_backup(
            config,
            bucket=bucket,
            project_name=project_name,
            store=opened,
            compose=compose,
            volumes=volumes,
            now=now,
        )
