# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Run Journal - Local audit trail of backup and restore runs.

Each run gets one row in ``runs`` (completed when the run ends) and one
row per target in ``run_targets``. Rows are never deleted.

The journal also makes overlapping runs visible: a run that started
recently and never completed is either still running or was killed, and
both deserve a warning before touching the same volumes again. Nothing
is locked; the warning is the whole mechanism.
"""

from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import List, Tuple, TypedDict

import aiosqlite
import structlog

from stackops.exceptions import JournalError

logger = structlog.get_logger()

STALE_AFTER = timedelta(hours=24)
RUN_KINDS = ("backup", "restore")


class RunRecord(TypedDict):
    """One backup or restore run."""

    id: str  # ULID
    kind: str  # one of RUN_KINDS
    run_timestamp: str  # YYYYMMDD_HHMMSS used in object keys
    started_at: str  # ISO 8601
    completed_at: str | None
    exit_code: int | None


class TargetRecord(TypedDict):
    """Outcome of one target within a run."""

    run_id: str
    target: str
    status: str  # ok, failed, skipped
    key: str | None
    size: int | None
    error: str | None


async def init_journal_db(db_path: Path) -> None:
    """
    Initialize the journal schema. Idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    run_timestamp TEXT NOT NULL,
                    targets TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    exit_code INTEGER
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS run_targets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    target TEXT NOT NULL,
                    status TEXT NOT NULL,
                    key TEXT,
                    size INTEGER,
                    error TEXT,
                    recorded_at TEXT NOT NULL,
                    FOREIGN KEY (run_id) REFERENCES runs(id)
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_started
                ON runs(started_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_run_targets_run
                ON run_targets(run_id)
            """)

            await db.commit()

        logger.debug("journal_db_initialized", db_path=str(db_path))

    except aiosqlite.Error as e:
        raise JournalError(
            f"Failed to initialize journal database: {e}",
            details={"db_path": str(db_path)},
        ) from e


async def record_run_started(
    db: aiosqlite.Connection,
    run_id: str,
    kind: str,
    run_timestamp: str,
    targets: List[str],
) -> None:
    try:
        await db.execute(
            """
            INSERT INTO runs (id, kind, run_timestamp, targets, started_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (run_id, kind, run_timestamp, ",".join(targets), datetime.now(UTC).isoformat()),
        )
        await db.commit()
    except aiosqlite.Error as e:
        raise JournalError(f"Failed to record run: {e}", details={"run_id": run_id}) from e


async def record_target(
    db: aiosqlite.Connection,
    run_id: str,
    target: str,
    status: str,
    key: str | None = None,
    size: int | None = None,
    error: str | None = None,
) -> None:
    try:
        await db.execute(
            """
            INSERT INTO run_targets (run_id, target, status, key, size, error, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (run_id, target, status, key, size, error, datetime.now(UTC).isoformat()),
        )
        await db.commit()
    except aiosqlite.Error as e:
        raise JournalError(
            f"Failed to record target outcome: {e}",
            details={"run_id": run_id, "target": target},
        ) from e


async def record_run_completed(db: aiosqlite.Connection, run_id: str, exit_code: int) -> None:
    try:
        await db.execute(
            """
            UPDATE runs SET completed_at = ?, exit_code = ?
            WHERE id = ? AND completed_at IS NULL
            """,
            (datetime.now(UTC).isoformat(), exit_code, run_id),
        )
        await db.commit()
    except aiosqlite.Error as e:
        raise JournalError(f"Failed to complete run: {e}", details={"run_id": run_id}) from e


def _row_to_run(row) -> RunRecord:
    return RunRecord(
        id=row[0],
        kind=row[1],
        run_timestamp=row[2],
        started_at=row[3],
        completed_at=row[4],
        exit_code=row[5],
    )


async def find_unfinished_runs(
    db: aiosqlite.Connection,
    exclude_run_id: str | None = None,
    now: datetime | None = None,
) -> List[RunRecord]:
    """
    Runs started within STALE_AFTER that never completed.

    Args:
        db: Journal connection
        exclude_run_id: The caller's own run
        now: Reference time (for tests)
    """
    cutoff = ((now or datetime.now(UTC)) - STALE_AFTER).isoformat()
    query = """
        SELECT id, kind, run_timestamp, started_at, completed_at, exit_code
        FROM runs
        WHERE completed_at IS NULL AND started_at >= ?
    """
    params: list = [cutoff]
    if exclude_run_id:
        query += " AND id != ?"
        params.append(exclude_run_id)
    query += " ORDER BY started_at DESC"

    async with db.execute(query, params) as cursor:
        return [_row_to_run(row) async for row in cursor]


async def list_runs(
    db: aiosqlite.Connection,
    limit: int = 20,
    kind: str | None = None,
) -> List[RunRecord]:
    """Most recent runs first."""
    query = """
        SELECT id, kind, run_timestamp, started_at, completed_at, exit_code
        FROM runs
    """
    params: list = []
    if kind:
        query += " WHERE kind = ?"
        params.append(kind)
    query += " ORDER BY started_at DESC LIMIT ?"
    params.append(limit)

    async with db.execute(query, params) as cursor:
        return [_row_to_run(row) async for row in cursor]


async def get_run_targets(db: aiosqlite.Connection, run_id: str) -> List[TargetRecord]:
    async with db.execute(
        """
        SELECT run_id, target, status, key, size, error
        FROM run_targets
        WHERE run_id = ?
        ORDER BY id
        """,
        (run_id,),
    ) as cursor:
        return [
            TargetRecord(
                run_id=row[0],
                target=row[1],
                status=row[2],
                key=row[3],
                size=row[4],
                error=row[5],
            )
            async for row in cursor
        ]


async def recent_runs(
    db_path: Path,
    limit: int = 20,
    kind: str | None = None,
) -> List[Tuple[RunRecord, List[TargetRecord]]]:
    """
    Read the most recent runs with their per-target rows.

    A journal file that does not exist yet has no runs.

    Raises:
        JournalError: If the database cannot be read
    """
    if not db_path.exists():
        return []
    try:
        async with aiosqlite.connect(db_path) as db:
            runs = await list_runs(db, limit=limit, kind=kind)
            return [(run, await get_run_targets(db, run["id"])) for run in runs]
    except aiosqlite.Error as e:
        raise JournalError(
            f"Failed to read journal database: {e}",
            details={"db_path": str(db_path)},
        ) from e


class RunJournal:
    """
    Journal handle used by the orchestrators.

    Journal problems are logged and swallowed here: losing an audit row
    must never fail a backup or restore.
    """

    def __init__(self, db_path: Path | None, run_id: str, kind: str):
        self.db_path = db_path
        self.run_id = run_id
        self.kind = kind
        self._db: aiosqlite.Connection | None = None

    async def __aenter__(self) -> "RunJournal":
        if self.db_path is None:
            return self
        try:
            await init_journal_db(self.db_path)
            self._db = await aiosqlite.connect(self.db_path)
        except (JournalError, aiosqlite.Error, OSError) as e:
            logger.warning("journal_unavailable", db_path=str(self.db_path), error=str(e))
            self._db = None
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self._db is not None:
            await self._db.close()
            self._db = None
        return False

    async def started(self, run_timestamp: str, targets: List[str]) -> List[RunRecord]:
        """Record the run start; returns other unfinished recent runs."""
        if self._db is None:
            return []
        try:
            others = await find_unfinished_runs(self._db, exclude_run_id=self.run_id)
            await record_run_started(self._db, self.run_id, self.kind, run_timestamp, targets)
        except (JournalError, aiosqlite.Error) as e:
            logger.warning("journal_write_failed", run_id=self.run_id, error=str(e))
            return []
        for other in others:
            logger.warning(
                "concurrent_run_suspected",
                other_run_id=other["id"],
                other_kind=other["kind"],
                other_started_at=other["started_at"],
            )
        return others

    async def target(self, target: str, status: str, **fields) -> None:
        if self._db is None:
            return
        try:
            await record_target(self._db, self.run_id, target, status, **fields)
        except JournalError as e:
            logger.warning("journal_write_failed", run_id=self.run_id, error=str(e))

    async def completed(self, exit_code: int) -> None:
        if self._db is None:
            return
        try:
            await record_run_completed(self._db, self.run_id, exit_code)
        except JournalError as e:
            logger.warning("journal_write_failed", run_id=self.run_id, error=str(e))
