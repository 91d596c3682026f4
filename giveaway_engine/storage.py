"""SQLite persistence for giveaways, entries, scheduled jobs, and the idempotency ledger."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, TypeVar

from .errors import StaleWriteError, TransientInfraError
from .models import (
    Entry,
    Giveaway,
    GiveawayStatus,
    JobStatus,
    LedgerEntry,
    RejectionReason,
    Requirements,
    ScheduledJob,
    can_transition,
    format_timestamp,
    parse_timestamp,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class Database:
    """Owns the SQLite file and runs blocking work on worker threads."""

    def __init__(self, path: Path, *, busy_timeout: float = 5.0) -> None:
        self.path = Path(path)
        self.busy_timeout = busy_timeout

    async def initialise(self) -> None:
        """Create the database file and schema if they do not exist yet."""
        await self.run(self._initialise)

    async def run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.OperationalError as exc:
            raise TransientInfraError(f"SQLite store unavailable: {exc}") from exc

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path, timeout=self.busy_timeout, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def _initialise(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect()
        try:
            self._ensure_schema(conn)
        finally:
            conn.close()

    @staticmethod
    def _ensure_schema(conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS giveaways (
                tenant_id INTEGER NOT NULL,
                giveaway_id TEXT NOT NULL,
                prize TEXT NOT NULL,
                description TEXT,
                channel_id INTEGER NOT NULL,
                winner_count INTEGER NOT NULL CHECK (winner_count > 0),
                requirements TEXT NOT NULL,
                ends_at TEXT NOT NULL,
                claim_timeout_seconds INTEGER NOT NULL,
                max_reroll_count INTEGER NOT NULL,
                status TEXT NOT NULL,
                reroll_count INTEGER NOT NULL DEFAULT 0,
                announced_winner_id INTEGER,
                excluded_user_ids TEXT NOT NULL,
                claim_expires_at TEXT,
                created_by INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                ended_at TEXT,
                completed_at TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (tenant_id, giveaway_id),
                CHECK (reroll_count <= max_reroll_count)
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_giveaways_tenant_status
            ON giveaways(tenant_id, status)
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS giveaway_entries (
                tenant_id INTEGER NOT NULL,
                giveaway_id TEXT NOT NULL,
                user_id INTEGER NOT NULL,
                entered_at TEXT NOT NULL,
                PRIMARY KEY (tenant_id, giveaway_id, user_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_jobs (
                job_key TEXT PRIMARY KEY,
                tenant_id INTEGER NOT NULL,
                giveaway_id TEXT NOT NULL,
                transition TEXT NOT NULL,
                payload TEXT NOT NULL,
                run_at TEXT NOT NULL,
                due_at TEXT NOT NULL,
                status TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                next_retry_at TEXT,
                lease_owner TEXT,
                lease_expires_at TEXT,
                last_error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_status_due
            ON scheduled_jobs(status, due_at)
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_ledger (
                job_key TEXT NOT NULL,
                step TEXT NOT NULL,
                outcome TEXT NOT NULL,
                recorded_at TEXT NOT NULL,
                PRIMARY KEY (job_key, step)
            )
            """
        )


class GiveawayRepository:
    """Tenant-scoped access to giveaway rows and their entries."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(
        self, giveaway: Giveaway, jobs: Sequence[ScheduledJob] = ()
    ) -> None:
        """Insert a new giveaway together with its initial jobs."""
        await self.db.run(self._create, giveaway, list(jobs))

    async def get(self, tenant_id: int, giveaway_id: str) -> Optional[Giveaway]:
        return await self.db.run(self._get, tenant_id, giveaway_id)

    async def list_by_status(
        self, statuses: Iterable[GiveawayStatus], *, tenant_id: Optional[int] = None
    ) -> List[Giveaway]:
        return await self.db.run(self._list_by_status, list(statuses), tenant_id)

    async def has_entry(self, tenant_id: int, giveaway_id: str, user_id: int) -> bool:
        return await self.db.run(self._has_entry, tenant_id, giveaway_id, user_id)

    async def add_entry(
        self, tenant_id: int, giveaway_id: str, user_id: int, now: datetime
    ) -> Optional[RejectionReason]:
        """Record an entry; returns ``None`` on success or why it was refused.

        The insert only happens while the giveaway is Active and ``now`` is before
        ``ends_at``, checked inside the same write transaction as the insert.
        """
        return await self.db.run(self._add_entry, tenant_id, giveaway_id, user_id, now)

    async def list_entries(self, tenant_id: int, giveaway_id: str) -> List[Entry]:
        return await self.db.run(self._list_entries, tenant_id, giveaway_id)

    async def list_entry_user_ids(self, tenant_id: int, giveaway_id: str) -> List[int]:
        entries = await self.list_entries(tenant_id, giveaway_id)
        return [entry.user_id for entry in entries]

    async def count_entries(self, tenant_id: int, giveaway_id: str) -> int:
        return await self.db.run(self._count_entries, tenant_id, giveaway_id)

    async def compare_and_set(
        self,
        giveaway: Giveaway,
        *,
        expected_status: GiveawayStatus,
        expected_version: int,
        now: datetime,
        ledger: Sequence[LedgerEntry] = (),
        jobs: Sequence[ScheduledJob] = (),
    ) -> Giveaway:
        """Persist ``giveaway`` only if the stored row still matches the expectation.

        Ledger records and follow-up jobs are written in the same transaction, so a
        crash can never leave a state change without its bookkeeping. Raises
        ``StaleWriteError`` when another writer got there first.
        """
        if not can_transition(expected_status, giveaway.status):
            raise ValueError(
                f"Illegal giveaway transition {expected_status.value} -> {giveaway.status.value}"
            )
        if giveaway.reroll_count > giveaway.max_reroll_count:
            raise ValueError("reroll_count must not exceed max_reroll_count")
        return await self.db.run(
            self._compare_and_set,
            giveaway,
            expected_status,
            expected_version,
            now,
            list(ledger),
            list(jobs),
        )

    # --- Internal helpers -------------------------------------------------

    def _create(self, giveaway: Giveaway, jobs: List[ScheduledJob]) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO giveaways(
                    tenant_id,
                    giveaway_id,
                    prize,
                    description,
                    channel_id,
                    winner_count,
                    requirements,
                    ends_at,
                    claim_timeout_seconds,
                    max_reroll_count,
                    status,
                    reroll_count,
                    announced_winner_id,
                    excluded_user_ids,
                    claim_expires_at,
                    created_by,
                    created_at,
                    updated_at,
                    ended_at,
                    completed_at,
                    version
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    giveaway.tenant_id,
                    giveaway.giveaway_id,
                    giveaway.prize,
                    giveaway.description,
                    giveaway.channel_id,
                    giveaway.winner_count,
                    json.dumps(giveaway.requirements.to_payload()),
                    format_timestamp(giveaway.ends_at),
                    giveaway.claim_timeout_seconds,
                    giveaway.max_reroll_count,
                    giveaway.status.value,
                    giveaway.reroll_count,
                    giveaway.announced_winner_id,
                    json.dumps(list(map(int, giveaway.excluded_user_ids))),
                    _ts_or_none(giveaway.claim_expires_at),
                    giveaway.created_by,
                    format_timestamp(giveaway.created_at),
                    _ts_or_none(giveaway.updated_at),
                    _ts_or_none(giveaway.ended_at),
                    _ts_or_none(giveaway.completed_at),
                    giveaway.version,
                ),
            )
            for job in jobs:
                JobStore.insert_job(conn, job, giveaway.created_at)

    def _get(self, tenant_id: int, giveaway_id: str) -> Optional[Giveaway]:
        with self.db.reader() as conn:
            row = conn.execute(
                "SELECT * FROM giveaways WHERE tenant_id = ? AND giveaway_id = ?",
                (tenant_id, giveaway_id),
            ).fetchone()
        return _row_to_giveaway(row) if row else None

    def _list_by_status(
        self, statuses: List[GiveawayStatus], tenant_id: Optional[int]
    ) -> List[Giveaway]:
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        query = f"SELECT * FROM giveaways WHERE status IN ({placeholders})"
        params: List[Any] = [status.value for status in statuses]
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY created_at"
        with self.db.reader() as conn:
            return [_row_to_giveaway(row) for row in conn.execute(query, params)]

    def _has_entry(self, tenant_id: int, giveaway_id: str, user_id: int) -> bool:
        with self.db.reader() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM giveaway_entries
                WHERE tenant_id = ? AND giveaway_id = ? AND user_id = ?
                """,
                (tenant_id, giveaway_id, user_id),
            ).fetchone()
        return row is not None

    def _add_entry(
        self, tenant_id: int, giveaway_id: str, user_id: int, now: datetime
    ) -> Optional[RejectionReason]:
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT status, ends_at FROM giveaways
                WHERE tenant_id = ? AND giveaway_id = ?
                """,
                (tenant_id, giveaway_id),
            ).fetchone()
            if row is None:
                return RejectionReason.NOT_FOUND
            if (
                row["status"] != GiveawayStatus.ACTIVE.value
                or row["ends_at"] <= format_timestamp(now)
            ):
                return RejectionReason.GIVEAWAY_CLOSED
            try:
                conn.execute(
                    """
                    INSERT INTO giveaway_entries(tenant_id, giveaway_id, user_id, entered_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (tenant_id, giveaway_id, user_id, format_timestamp(now)),
                )
            except sqlite3.IntegrityError:
                return RejectionReason.DUPLICATE_ENTRY
        return None

    def _list_entries(self, tenant_id: int, giveaway_id: str) -> List[Entry]:
        with self.db.reader() as conn:
            rows = conn.execute(
                """
                SELECT tenant_id, giveaway_id, user_id, entered_at FROM giveaway_entries
                WHERE tenant_id = ? AND giveaway_id = ?
                ORDER BY entered_at, user_id
                """,
                (tenant_id, giveaway_id),
            ).fetchall()
        return [
            Entry(
                tenant_id=int(row["tenant_id"]),
                giveaway_id=row["giveaway_id"],
                user_id=int(row["user_id"]),
                entered_at=parse_timestamp(row["entered_at"]),
            )
            for row in rows
        ]

    def _count_entries(self, tenant_id: int, giveaway_id: str) -> int:
        with self.db.reader() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM giveaway_entries
                WHERE tenant_id = ? AND giveaway_id = ?
                """,
                (tenant_id, giveaway_id),
            ).fetchone()
        return int(row["total"])

    def _compare_and_set(
        self,
        giveaway: Giveaway,
        expected_status: GiveawayStatus,
        expected_version: int,
        now: datetime,
        ledger: List[LedgerEntry],
        jobs: List[ScheduledJob],
    ) -> Giveaway:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE giveaways SET
                    status = ?,
                    reroll_count = ?,
                    announced_winner_id = ?,
                    excluded_user_ids = ?,
                    claim_expires_at = ?,
                    ended_at = ?,
                    completed_at = ?,
                    updated_at = ?,
                    version = version + 1
                WHERE tenant_id = ? AND giveaway_id = ? AND status = ? AND version = ?
                """,
                (
                    giveaway.status.value,
                    giveaway.reroll_count,
                    giveaway.announced_winner_id,
                    json.dumps(list(map(int, giveaway.excluded_user_ids))),
                    _ts_or_none(giveaway.claim_expires_at),
                    _ts_or_none(giveaway.ended_at),
                    _ts_or_none(giveaway.completed_at),
                    format_timestamp(now),
                    giveaway.tenant_id,
                    giveaway.giveaway_id,
                    expected_status.value,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                raise StaleWriteError(
                    f"Giveaway {giveaway.giveaway_id} is no longer "
                    f"{expected_status.value}@v{expected_version}"
                )
            for entry in ledger:
                IdempotencyLedger.insert_entry(conn, entry, now)
            for job in jobs:
                JobStore.insert_job(conn, job, now)
        return replace(giveaway, version=expected_version + 1, updated_at=now)


class JobStore:
    """Durable clock/timer store with lease-based claiming."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def enqueue(self, job: ScheduledJob, now: datetime) -> bool:
        """Insert a job; returns False when a job with the same key already exists."""
        return await self.db.run(self._enqueue, job, now)

    async def get(self, job_key: str) -> Optional[ScheduledJob]:
        return await self.db.run(self._get, job_key)

    async def poll(self, now: datetime, limit: int = 20) -> List[ScheduledJob]:
        """Return pending jobs whose run (or retry) time has come."""
        return await self.db.run(self._poll, now, limit)

    async def claim(
        self, job_key: str, worker_id: str, now: datetime, lease_seconds: float
    ) -> Optional[ScheduledJob]:
        """Atomically move a due job from Pending to Running under a lease."""
        return await self.db.run(self._claim, job_key, worker_id, now, lease_seconds)

    async def mark_succeeded(self, job_key: str, now: datetime) -> bool:
        """Mark a job done. Returns True if it had already been dead-lettered."""
        return await self.db.run(self._mark_succeeded, job_key, now)

    async def schedule_retry(
        self,
        job_key: str,
        *,
        owner: Optional[str],
        attempt_count: int,
        next_retry_at: datetime,
        error: str,
        now: datetime,
        expired_before: Optional[datetime] = None,
    ) -> bool:
        return await self.db.run(
            self._release,
            job_key,
            owner,
            JobStatus.PENDING,
            attempt_count,
            next_retry_at,
            error,
            now,
            expired_before,
        )

    async def defer(
        self, job_key: str, *, owner: Optional[str], run_at: datetime, now: datetime
    ) -> bool:
        job = await self.get(job_key)
        if job is None:
            return False
        return await self.db.run(
            self._release,
            job_key,
            owner,
            JobStatus.PENDING,
            job.attempt_count,
            run_at,
            job.last_error,
            now,
            None,
        )

    async def mark_dead_lettered(
        self,
        job_key: str,
        *,
        owner: Optional[str],
        attempt_count: int,
        error: str,
        now: datetime,
        expired_before: Optional[datetime] = None,
    ) -> bool:
        return await self.db.run(
            self._release,
            job_key,
            owner,
            JobStatus.DEAD_LETTERED,
            attempt_count,
            None,
            error,
            now,
            expired_before,
        )

    async def expired_leases(self, now: datetime) -> List[ScheduledJob]:
        return await self.db.run(self._expired_leases, now)

    async def list_dead_letters(
        self, tenant_id: Optional[int] = None
    ) -> List[ScheduledJob]:
        return await self.db.run(self._list_dead_letters, tenant_id)

    async def redrive(self, job_key: str, now: datetime) -> bool:
        """Return a dead-lettered job to Pending with a fresh retry budget."""
        return await self.db.run(self._redrive, job_key, now)

    # --- Internal helpers -------------------------------------------------

    @staticmethod
    def insert_job(conn: sqlite3.Connection, job: ScheduledJob, now: datetime) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO scheduled_jobs(
                job_key,
                tenant_id,
                giveaway_id,
                transition,
                payload,
                run_at,
                due_at,
                status,
                attempt_count,
                next_retry_at,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.job_key,
                job.tenant_id,
                job.giveaway_id,
                job.transition,
                json.dumps(job.payload),
                format_timestamp(job.run_at),
                format_timestamp(job.due_at),
                job.status.value,
                job.attempt_count,
                _ts_or_none(job.next_retry_at),
                format_timestamp(now),
                format_timestamp(now),
            ),
        )
        return cursor.rowcount == 1

    def _enqueue(self, job: ScheduledJob, now: datetime) -> bool:
        with self.db.transaction() as conn:
            return self.insert_job(conn, job, now)

    def _get(self, job_key: str) -> Optional[ScheduledJob]:
        with self.db.reader() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_jobs WHERE job_key = ?", (job_key,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def _poll(self, now: datetime, limit: int) -> List[ScheduledJob]:
        with self.db.reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scheduled_jobs
                WHERE status = ? AND due_at <= ?
                ORDER BY due_at
                LIMIT ?
                """,
                (JobStatus.PENDING.value, format_timestamp(now), limit),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def _claim(
        self, job_key: str, worker_id: str, now: datetime, lease_seconds: float
    ) -> Optional[ScheduledJob]:
        lease_expires_at = now + timedelta(seconds=lease_seconds)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_jobs SET
                    status = ?,
                    lease_owner = ?,
                    lease_expires_at = ?,
                    updated_at = ?
                WHERE job_key = ? AND status = ? AND due_at <= ?
                """,
                (
                    JobStatus.RUNNING.value,
                    worker_id,
                    format_timestamp(lease_expires_at),
                    format_timestamp(now),
                    job_key,
                    JobStatus.PENDING.value,
                    format_timestamp(now),
                ),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute(
                "SELECT * FROM scheduled_jobs WHERE job_key = ?", (job_key,)
            ).fetchone()
        return _row_to_job(row)

    def _mark_succeeded(self, job_key: str, now: datetime) -> bool:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT status FROM scheduled_jobs WHERE job_key = ?", (job_key,)
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                """
                UPDATE scheduled_jobs SET
                    status = ?,
                    lease_owner = NULL,
                    lease_expires_at = NULL,
                    updated_at = ?
                WHERE job_key = ?
                """,
                (JobStatus.SUCCEEDED.value, format_timestamp(now), job_key),
            )
        return row["status"] == JobStatus.DEAD_LETTERED.value

    def _release(
        self,
        job_key: str,
        owner: Optional[str],
        status: JobStatus,
        attempt_count: int,
        next_retry_at: Optional[datetime],
        error: Optional[str],
        now: datetime,
        expired_before: Optional[datetime],
    ) -> bool:
        query = """
            UPDATE scheduled_jobs SET
                status = ?,
                attempt_count = ?,
                next_retry_at = ?,
                due_at = COALESCE(?, due_at),
                last_error = ?,
                lease_owner = NULL,
                lease_expires_at = NULL,
                updated_at = ?
            WHERE job_key = ? AND status = ? AND lease_owner IS ?
        """
        params: List[Any] = [
            status.value,
            attempt_count,
            _ts_or_none(next_retry_at),
            _ts_or_none(next_retry_at),
            error,
            format_timestamp(now),
            job_key,
            JobStatus.RUNNING.value,
            owner,
        ]
        if expired_before is not None:
            query += " AND lease_expires_at < ?"
            params.append(format_timestamp(expired_before))
        with self.db.transaction() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount == 1

    def _expired_leases(self, now: datetime) -> List[ScheduledJob]:
        with self.db.reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scheduled_jobs
                WHERE status = ? AND lease_expires_at < ?
                ORDER BY lease_expires_at
                """,
                (JobStatus.RUNNING.value, format_timestamp(now)),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def _list_dead_letters(self, tenant_id: Optional[int]) -> List[ScheduledJob]:
        query = "SELECT * FROM scheduled_jobs WHERE status = ?"
        params: List[Any] = [JobStatus.DEAD_LETTERED.value]
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY updated_at"
        with self.db.reader() as conn:
            return [_row_to_job(row) for row in conn.execute(query, params)]

    def _redrive(self, job_key: str, now: datetime) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_jobs SET
                    status = ?,
                    attempt_count = 0,
                    next_retry_at = NULL,
                    due_at = ?,
                    updated_at = ?
                WHERE job_key = ? AND status = ?
                """,
                (
                    JobStatus.PENDING.value,
                    format_timestamp(now),
                    format_timestamp(now),
                    job_key,
                    JobStatus.DEAD_LETTERED.value,
                ),
            )
            return cursor.rowcount == 1


class IdempotencyLedger:
    """Records which steps of which job keys have already taken effect."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def get(self, job_key: str, step: str) -> Optional[LedgerEntry]:
        return await self.db.run(self._get, job_key, step)

    async def has(self, job_key: str, step: str) -> bool:
        return await self.get(job_key, step) is not None

    async def record(self, entry: LedgerEntry, now: datetime) -> bool:
        return await self.db.run(self._record, entry, now)

    @staticmethod
    def insert_entry(conn: sqlite3.Connection, entry: LedgerEntry, now: datetime) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO idempotency_ledger(job_key, step, outcome, recorded_at)
            VALUES (?, ?, ?, ?)
            """,
            (entry.job_key, entry.step, json.dumps(entry.outcome), format_timestamp(now)),
        )
        return cursor.rowcount == 1

    def _get(self, job_key: str, step: str) -> Optional[LedgerEntry]:
        with self.db.reader() as conn:
            row = conn.execute(
                "SELECT * FROM idempotency_ledger WHERE job_key = ? AND step = ?",
                (job_key, step),
            ).fetchone()
        if row is None:
            return None
        return LedgerEntry(
            job_key=row["job_key"], step=row["step"], outcome=json.loads(row["outcome"])
        )

    def _record(self, entry: LedgerEntry, now: datetime) -> bool:
        with self.db.transaction() as conn:
            return self.insert_entry(conn, entry, now)


def _ts_or_none(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value is not None else None


def _row_to_giveaway(row: sqlite3.Row) -> Giveaway:
    winner = row["announced_winner_id"]
    return Giveaway(
        tenant_id=int(row["tenant_id"]),
        giveaway_id=row["giveaway_id"],
        prize=row["prize"],
        description=row["description"] or "",
        channel_id=int(row["channel_id"]),
        winner_count=int(row["winner_count"]),
        requirements=Requirements.from_payload(json.loads(row["requirements"])),
        ends_at=parse_timestamp(row["ends_at"]),
        claim_timeout_seconds=int(row["claim_timeout_seconds"]),
        max_reroll_count=int(row["max_reroll_count"]),
        status=GiveawayStatus(row["status"]),
        reroll_count=int(row["reroll_count"]),
        announced_winner_id=int(winner) if winner is not None else None,
        excluded_user_ids=[int(value) for value in json.loads(row["excluded_user_ids"])],
        claim_expires_at=parse_timestamp(row["claim_expires_at"]),
        created_by=row["created_by"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
        ended_at=parse_timestamp(row["ended_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
        version=int(row["version"]),
    )


def _row_to_job(row: sqlite3.Row) -> ScheduledJob:
    return ScheduledJob(
        job_key=row["job_key"],
        tenant_id=int(row["tenant_id"]),
        giveaway_id=row["giveaway_id"],
        transition=row["transition"],
        payload=json.loads(row["payload"]),
        run_at=parse_timestamp(row["run_at"]),
        status=JobStatus(row["status"]),
        attempt_count=int(row["attempt_count"]),
        next_retry_at=parse_timestamp(row["next_retry_at"]),
        lease_owner=row["lease_owner"],
        lease_expires_at=parse_timestamp(row["lease_expires_at"]),
        last_error=row["last_error"],
        created_at=parse_timestamp(row["created_at"]),
    )
