# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Catalog - Listing and age-based cleanup of stored backups.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Iterable, List

import structlog

from stackops.exceptions import StoreUnavailable
from stackops.store import ObjectInfo, ObjectStore
from stackops.targets import Target, parse_backup_key

logger = structlog.get_logger()


@dataclass
class RestorePoint:
    """All archives sharing one run timestamp."""

    timestamp: str
    targets: List[str] = field(default_factory=list)
    total_size: int = 0


def _list_prefix(prefix: str) -> str:
    prefix = prefix.strip("/")
    return f"{prefix}/" if prefix else ""


async def list_backups(
    store: ObjectStore,
    prefix: str,
    targets: Iterable[Target] | None = None,
    limit: int | None = 20,
) -> List[ObjectInfo]:
    """
    Backup archives under prefix, oldest first, keeping the newest ``limit``.

    Args:
        store: Object store
        prefix: Key prefix
        targets: Only archives of these targets (all archives if None)
        limit: Keep at most this many of the most recent (None for all)

    Raises:
        StoreUnavailable: If listing fails
    """
    names = {t.short_name for t in targets} if targets is not None else None
    objects = []
    for obj in await store.list(_list_prefix(prefix)):
        parsed = parse_backup_key(obj.key)
        if parsed is None:
            continue
        if names is not None and parsed[0] not in names:
            continue
        objects.append(obj)

    objects.sort(key=lambda o: (o.last_modified, o.key))
    if limit is not None:
        objects = objects[-limit:]
    return objects


def group_restore_points(objects: Iterable[ObjectInfo]) -> List[RestorePoint]:
    """Group archives by timestamp, newest timestamp first."""
    points: dict[str, RestorePoint] = {}
    for obj in objects:
        parsed = parse_backup_key(obj.key)
        if parsed is None:
            continue
        short_name, timestamp = parsed
        point = points.setdefault(timestamp, RestorePoint(timestamp))
        point.targets.append(short_name)
        point.total_size += obj.size
    return sorted(points.values(), key=lambda p: p.timestamp, reverse=True)


async def purge_expired_backups(
    store: ObjectStore,
    prefix: str,
    max_age_days: int,
    now: datetime | None = None,
) -> List[str]:
    """
    Delete backup archives last modified more than max_age_days ago.

    Best effort: individual delete failures are logged and skipped.

    Returns:
        Keys that were deleted

    Raises:
        StoreUnavailable: If the listing itself fails
    """
    cutoff = (now or datetime.now(UTC)) - timedelta(days=max_age_days)
    deleted: List[str] = []

    for obj in await list_backups(store, prefix, limit=None):
        if obj.last_modified >= cutoff:
            continue
        try:
            await store.delete(obj.key)
            deleted.append(obj.key)
            logger.info(
                "backup_purged",
                key=obj.key,
                last_modified=obj.last_modified.isoformat(),
            )
        except StoreUnavailable as e:
            logger.warning("backup_purge_failed", key=obj.key, error=str(e))

    logger.info("backup_purge_complete", deleted=len(deleted), max_age_days=max_age_days)
    return deleted
