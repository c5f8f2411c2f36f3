# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Restore - Replace compose volumes with archived contents.

Without a timestamp, restore only lists what is available and changes
nothing. With a timestamp it asks for a literal "yes", stops the whole
stack, restores each target in turn and starts the stack again.

A missing archive skips that target; an unsafe or unreadable archive
fails that target before its volume is touched. Targets already restored
are never rolled back, so a partial restore is visible in the result and
in the exit code rather than hidden.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Awaitable, Callable, List, Union

import structlog
from ulid import ULID

from stackops.archive import extract_archive, scratch_dir
from stackops.backup import TargetOutcome, TargetStatus
from stackops.catalog import RestorePoint, group_restore_points, list_backups
from stackops.compose import ComposeProject, require_host, resolve_project_name
from stackops.config import StackOpsConfig
from stackops.exceptions import (
    ArchiveError,
    CommandError,
    ObjectNotFound,
    StoreUnavailable,
    TransferFailed,
    UnsafeArchiveMember,
)
from stackops.journal import RunJournal
from stackops.quiesce import Quiescer
from stackops.shell import CommandRunner, run_command
from stackops.store import ObjectInfo, ObjectStore, human_size, open_store_for
from stackops.targets import ARCHIVE_SUFFIX, Target, backup_key, validate_timestamp
from stackops.terraform import resolve_bucket
from stackops.volumes import VolumeAccessor

logger = structlog.get_logger()

CONFIRM_PROMPT = "Are you sure? (yes/no)"
CONFIRM_REPLY = "yes"

AskFunc = Callable[[str], Union[str, Awaitable[str]]]


@dataclass
class RestoreResult:
    """Result of a restore invocation."""

    run_id: str  # ULID
    timestamp: str | None
    bucket: str
    project_name: str
    listing_only: bool = False
    aborted: bool = False
    available: List[ObjectInfo] = field(default_factory=list)
    restore_points: List[RestorePoint] = field(default_factory=list)
    outcomes: List[TargetOutcome] = field(default_factory=list)
    restart_failed: bool = False
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def restored_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == TargetStatus.OK)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == TargetStatus.FAILED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == TargetStatus.SKIPPED)

    @property
    def exit_code(self) -> int:
        if self.listing_only or self.aborted:
            return 0
        if self.failed_count or self.skipped_count or self.restart_failed:
            return 1
        return 0


async def restore_target(
    config: StackOpsConfig,
    target: Target,
    *,
    project_name: str,
    timestamp: str,
    store: ObjectStore,
    volumes: VolumeAccessor,
) -> TargetOutcome:
    """
    Restore one target's volume from its archive at timestamp.

    Per-target errors are returned as outcomes, never raised.
    """
    volume_id = target.volume_id(project_name)
    key = backup_key(config.key_prefix, target.short_name, timestamp)
    log = logger.bind(target=target.short_name, volume=volume_id, key=key)

    try:
        size = await store.head(key)
    except ObjectNotFound as e:
        log.warning("restore_target_skipped", reason=e.message)
        return TargetOutcome(target.short_name, TargetStatus.SKIPPED, key=key, reason=e.message)
    except StoreUnavailable as e:
        log.error("restore_target_failed", error=str(e))
        return TargetOutcome(target.short_name, TargetStatus.FAILED, key=key, reason=str(e))

    log.info("restore_target_started", backup_size=human_size(size))

    try:
        async with scratch_dir(config.scratch_root, f"restore_{target.short_name}") as work:
            archive_path = work / f"{target.short_name}_{timestamp}{ARCHIVE_SUFFIX}"
            await store.download(key, archive_path)

            data_dir = work / "data"
            summary = await extract_archive(archive_path, data_dir)
            archive_path.unlink()
            log.info(
                "backup_extracted",
                entries=summary.entry_count,
                files=summary.file_count,
                sample=summary.sample,
            )

            await volumes.replace_contents(volume_id, data_dir, has_entries=not summary.is_empty)
    except ObjectNotFound as e:
        log.warning("restore_target_skipped", reason=e.message)
        return TargetOutcome(target.short_name, TargetStatus.SKIPPED, key=key, reason=e.message)
    except UnsafeArchiveMember as e:
        log.error("restore_archive_unsafe", error=str(e))
        return TargetOutcome(target.short_name, TargetStatus.FAILED, key=key, reason=str(e))
    except (TransferFailed, ArchiveError, CommandError, OSError) as e:
        log.error("restore_target_failed", error=str(e))
        return TargetOutcome(target.short_name, TargetStatus.FAILED, key=key, reason=str(e))

    if summary.is_empty:
        log.info("restore_target_completed", note="volume was empty, restored empty volume")
    else:
        log.info("restore_target_completed", files=summary.file_count)
    return TargetOutcome(target.short_name, TargetStatus.OK, key=key, size=size)


async def _confirm(ask: AskFunc | None, timestamp: str) -> bool:
    if ask is None:
        logger.warning("restore_confirmation_unavailable", timestamp=timestamp)
        return False
    reply = ask(CONFIRM_PROMPT)
    if inspect.isawaitable(reply):
        reply = await reply
    return reply == CONFIRM_REPLY


async def _run_restore(
    config: StackOpsConfig,
    *,
    timestamp: str | None,
    ask: AskFunc | None,
    bucket: str,
    project_name: str,
    store: ObjectStore,
    compose: ComposeProject | None,
    volumes: VolumeAccessor | None,
    runner: CommandRunner,
) -> RestoreResult:
    run_id = str(ULID())
    started = datetime.now(UTC)
    result = RestoreResult(
        run_id=run_id,
        timestamp=timestamp,
        bucket=bucket,
        project_name=project_name,
    )

    if timestamp is None:
        result.listing_only = True
        result.available = await list_backups(
            store, config.key_prefix, config.targets, limit=config.list_limit
        )
        result.restore_points = group_restore_points(result.available)
        logger.info(
            "backups_available",
            location=store.url(config.key_prefix.strip("/") + "/"),
            count=len(result.available),
        )
        return result

    if compose is None or volumes is None:
        require_host(config)
    compose = compose or ComposeProject.from_config(config, runner)
    volumes = volumes or VolumeAccessor.from_config(config, runner)

    logger.warning(
        "restore_will_replace_volumes",
        timestamp=timestamp,
        targets=[t.short_name for t in config.targets],
    )
    if not await _confirm(ask, timestamp):
        result.aborted = True
        logger.info("restore_cancelled", timestamp=timestamp)
        return result

    async with RunJournal(config.journal_path, run_id, "restore") as journal:
        await journal.started(timestamp, [t.short_name for t in config.targets])

        before = await volumes.list_volumes(project_name)
        logger.info("volumes_before_restore", volumes=before)

        try:
            async with Quiescer(compose).stack_down() as stack:
                for target in config.targets:
                    outcome = await restore_target(
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

                result.restart_failed = not await stack.release()
        except CommandError as e:
            # Only compose down raises here; no volume was touched
            logger.error("stack_stop_failed", error=str(e))
            await journal.completed(1)
            raise

        if not result.restart_failed and config.settle_seconds:
            await asyncio.sleep(config.settle_seconds)

        try:
            logger.info("service_status", output=(await compose.ps()).strip())
        except CommandError as e:
            logger.warning("service_status_unavailable", error=str(e))
        logger.info("volumes_after_restore", volumes=await volumes.list_volumes(project_name))

        result.duration_seconds = (datetime.now(UTC) - started).total_seconds()
        await journal.completed(result.exit_code)

    logger.info(
        "restore_completed",
        run_id=run_id,
        timestamp=timestamp,
        restored=result.restored_count,
        failed=result.failed_count,
        skipped=result.skipped_count,
        restart_failed=result.restart_failed,
        exit_code=result.exit_code,
        duration=result.duration_seconds,
    )
    return result


async def run_restore(
    config: StackOpsConfig,
    *,
    timestamp: str | None = None,
    ask: AskFunc | None = None,
    store: ObjectStore | None = None,
    compose: ComposeProject | None = None,
    volumes: VolumeAccessor | None = None,
    runner: CommandRunner = run_command,
) -> RestoreResult:
    """
    List backups, or restore every configured target from one timestamp.

    Args:
        config: Host configuration
        timestamp: YYYYMMDD_HHMMSS to restore; None lists backups only
        ask: Returns the operator's reply to a prompt; only "yes" proceeds
        store: Open object store (opened from config when omitted)
        compose: Compose project (built from config when omitted)
        volumes: Volume accessor (built from config when omitted)
        runner: Command runner for the default collaborators

    Returns:
        RestoreResult; ``exit_code`` is non-zero if any target failed or
        was skipped, or the stack did not come back up

    Raises:
        ConfigurationError: Malformed timestamp
        PreconditionFailed: Missing docker, compose dir or bucket
        StoreUnavailable: If listing fails in discovery mode
    """
    if timestamp is not None:
        validate_timestamp(timestamp)
    project_name = await resolve_project_name(config, runner)

    if store is not None:
        return await _run_restore(
            config,
            timestamp=timestamp,
            ask=ask,
            bucket=store.bucket,
            project_name=project_name,
            store=store,
            compose=compose,
            volumes=volumes,
            runner=runner,
        )

    bucket = await resolve_bucket(config, runner)
    async with open_store_for(config, bucket) as opened:
        return await _run_restore(
            config,
            timestamp=timestamp,
            ask=ask,
            bucket=bucket,
            project_name=project_name,
            store=opened,
            compose=compose,
            volumes=volumes,
            runner=runner,
        )
