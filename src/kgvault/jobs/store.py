"""Checkpoint job persistence: protocol + in-memory, SQLite and Postgres backends.

CheckpointJobStore is the protocol. Code against it.
Primary: PostgresCheckpointJobStore (asyncpg pool, shared by every coordinator)
Fallback: SqliteCheckpointJobStore (single host, async via aiosqlite)
Testing: InMemoryCheckpointJobStore

The store exclusively owns job rows. A coordinator moves a job to
``running`` only through claim(), a conditional update that succeeds for
exactly one caller when two race for the same row.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import aiosqlite

from kgvault.errors import CheckpointJobError
from kgvault.jobs.types import (
    CLAIMABLE_STATUSES,
    PENDING_STATUSES,
    CheckpointJob,
    CheckpointJobPayload,
    JobStatus,
    normalize_status,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "session_checkpoint_jobs"
_SAFE_TABLE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def _check_table(name: str) -> str:
    if not _SAFE_TABLE.match(name):
        raise ValueError(
            f"Invalid table name {name!r}: letters, digits and underscores only, "
            "starting with a letter or underscore."
        )
    return name


def _quote_ident(name: str) -> str:
    return '"' + _check_table(name).replace('"', '""') + '"'


def _parse_payload(raw: Any) -> CheckpointJobPayload:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        raise ValueError("Checkpoint job payload is not a JSON object")
    return CheckpointJobPayload.from_dict(raw)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return utcnow()


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def row_to_job(row: Any) -> CheckpointJob:
    """Build a job from a mapping-like row (sqlite3.Row, asyncpg.Record, dict)."""
    return CheckpointJob(
        id=row["job_id"],
        payload=_parse_payload(row["payload"]),
        status=normalize_status(row["status"]),
        attempts=max(0, int(row["attempts"] or 0)),
        last_error=row["last_error"],
        queued_at=_parse_ts(row["queued_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


@runtime_checkable
class CheckpointJobStore(Protocol):
    """Protocol for durable checkpoint job rows."""

    async def initialize(self) -> None: ...
    async def load_pending(self) -> list[CheckpointJob]: ...
    async def load_dead_letters(self) -> list[CheckpointJob]: ...
    async def get(self, job_id: str) -> CheckpointJob | None: ...
    async def upsert(self, job: CheckpointJob) -> None: ...
    async def claim(self, job: CheckpointJob) -> bool: ...
    async def delete(self, job_id: str) -> None: ...
    async def close(self) -> None: ...


async def requeue_dead_letter(store: CheckpointJobStore, job_id: str) -> CheckpointJob:
    """Move a dead-lettered job back to ``queued`` with a fresh attempt budget.

    ``last_error`` is kept so operators can still see why it failed.
    """
    job = await store.get(job_id)
    if job is None:
        raise CheckpointJobError(f"Checkpoint job {job_id} not found")
    if job.status is not JobStatus.MANUAL_INTERVENTION:
        raise CheckpointJobError(
            f"Checkpoint job {job_id} is {job.status.value}, not manual_intervention"
        )
    requeued = job.with_status(JobStatus.QUEUED, attempts=0)
    await store.upsert(requeued)
    logger.info("Requeued dead-lettered checkpoint job %s", job_id)
    return requeued


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryCheckpointJobStore:
    """Process-local rows. Nothing survives a restart."""

    def __init__(self) -> None:
        self._rows: dict[str, CheckpointJob] = {}

    async def initialize(self) -> None:
        pass

    async def load_pending(self) -> list[CheckpointJob]:
        rows = [j for j in self._rows.values() if j.status in PENDING_STATUSES]
        return [copy.deepcopy(j) for j in sorted(rows, key=lambda j: j.queued_at)]

    async def load_dead_letters(self) -> list[CheckpointJob]:
        rows = [j for j in self._rows.values() if j.status is JobStatus.MANUAL_INTERVENTION]
        return [copy.deepcopy(j) for j in sorted(rows, key=lambda j: j.updated_at, reverse=True)]

    async def get(self, job_id: str) -> CheckpointJob | None:
        job = self._rows.get(job_id)
        return copy.deepcopy(job) if job else None

    async def upsert(self, job: CheckpointJob) -> None:
        existing = self._rows.get(job.id)
        stored = copy.deepcopy(job)
        if existing is not None:
            stored.queued_at = existing.queued_at
        self._rows[job.id] = stored

    async def claim(self, job: CheckpointJob) -> bool:
        existing = self._rows.get(job.id)
        if existing is None or existing.status not in CLAIMABLE_STATUSES:
            return False
        existing.status = JobStatus.RUNNING
        existing.attempts = job.attempts
        existing.last_error = job.last_error
        existing.updated_at = job.updated_at
        return True

    async def delete(self, job_id: str) -> None:
        self._rows.pop(job_id, None)

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------


class SqliteCheckpointJobStore:
    """Job rows in a local SQLite file via aiosqlite.

    Timestamps are stored as ISO-8601 UTC text with fixed microsecond
    precision, so text order is time order.
    """

    def __init__(self, db_path: str | Path, table: str = DEFAULT_TABLE) -> None:
        self._db_path = Path(db_path).expanduser()
        self._table = _check_table(table)
        self._conn: aiosqlite.Connection | None = None

    async def _ensure_connection(self) -> aiosqlite.Connection:
        if self._conn is not None:
            return self._conn
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self._db_path))
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode = WAL")
        await self._conn.execute("PRAGMA busy_timeout = 3000")
        return self._conn

    async def initialize(self) -> None:
        conn = await self._ensure_connection()
        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                job_id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                queued_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await conn.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{self._table}_status_queued "
            f"ON {self._table}(status, queued_at)"
        )
        await conn.commit()

    async def _select(self, where: str, order: str, params: tuple = ()) -> list[CheckpointJob]:
        conn = await self._ensure_connection()
        async with conn.execute(
            f"SELECT job_id, payload, status, attempts, last_error, queued_at, updated_at "
            f"FROM {self._table} WHERE {where} ORDER BY {order}",
            params,
        ) as cursor:
            rows = await cursor.fetchall()
        jobs = []
        for row in rows:
            try:
                jobs.append(row_to_job(row))
            except (ValueError, KeyError, TypeError) as exc:
                logger.error("Skipping unreadable checkpoint job row %s: %s", row["job_id"], exc)
        return jobs

    async def load_pending(self) -> list[CheckpointJob]:
        statuses = sorted(s.value for s in PENDING_STATUSES)
        placeholders = ", ".join("?" for _ in statuses)
        return await self._select(f"status IN ({placeholders})", "queued_at ASC", tuple(statuses))

    async def load_dead_letters(self) -> list[CheckpointJob]:
        return await self._select(
            "status = ?", "updated_at DESC", (JobStatus.MANUAL_INTERVENTION.value,)
        )

    async def get(self, job_id: str) -> CheckpointJob | None:
        jobs = await self._select("job_id = ?", "job_id", (job_id,))
        return jobs[0] if jobs else None

    async def upsert(self, job: CheckpointJob) -> None:
        conn = await self._ensure_connection()
        await conn.execute(
            f"""
            INSERT INTO {self._table}
                (job_id, session_id, payload, status, attempts, last_error, queued_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                session_id = excluded.session_id,
                payload = excluded.payload,
                status = excluded.status,
                attempts = excluded.attempts,
                last_error = excluded.last_error,
                updated_at = excluded.updated_at
            """,
            (
                job.id,
                job.session_id,
                json.dumps(job.payload.to_dict()),
                job.status.value,
                job.attempts,
                job.last_error,
                _iso(job.queued_at),
                _iso(job.updated_at),
            ),
        )
        await conn.commit()

    async def claim(self, job: CheckpointJob) -> bool:
        conn = await self._ensure_connection()
        cursor = await conn.execute(
            f"UPDATE {self._table} SET status = ?, attempts = ?, last_error = ?, updated_at = ? "
            f"WHERE job_id = ? AND status IN (?, ?)",
            (
                JobStatus.RUNNING.value,
                job.attempts,
                job.last_error,
                _iso(job.updated_at),
                job.id,
                JobStatus.QUEUED.value,
                JobStatus.PENDING.value,
            ),
        )
        claimed = cursor.rowcount == 1
        await cursor.close()
        await conn.commit()
        return claimed

    async def delete(self, job_id: str) -> None:
        conn = await self._ensure_connection()
        await conn.execute(f"DELETE FROM {self._table} WHERE job_id = ?", (job_id,))
        await conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None


# ---------------------------------------------------------------------------
# Postgres backend
# ---------------------------------------------------------------------------


class PostgresCheckpointJobStore:
    """Job rows in Postgres through an asyncpg pool.

    initialize() takes a transaction-scoped advisory lock so concurrent
    coordinators do not race on the DDL.
    """

    def __init__(self, pool: Any, table: str = DEFAULT_TABLE) -> None:
        self._pool = pool
        self._table_name = _check_table(table)
        self._table = _quote_ident(table)
        self._owns_pool = False

    @classmethod
    async def from_dsn(cls, dsn: str, table: str = DEFAULT_TABLE) -> PostgresCheckpointJobStore:
        import asyncpg

        pool = await asyncpg.create_pool(dsn, min_size=1, max_size=4)
        store = cls(pool, table)
        store._owns_pool = True
        return store

    async def initialize(self) -> None:
        index = _quote_ident(f"{self._table_name}_status_queued_idx")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", self._table_name)
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {self._table} (
                        job_id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL,
                        payload JSONB NOT NULL,
                        status TEXT NOT NULL,
                        attempts INTEGER NOT NULL DEFAULT 0,
                        last_error TEXT,
                        queued_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                """)
                await conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {index} ON {self._table} (status, queued_at)"
                )

    async def _select(self, where: str, order: str, *params: Any) -> list[CheckpointJob]:
        rows = await self._pool.fetch(
            f"SELECT job_id, payload, status, attempts, last_error, queued_at, updated_at "
            f"FROM {self._table} WHERE {where} ORDER BY {order}",
            *params,
        )
        jobs = []
        for row in rows:
            try:
                jobs.append(row_to_job(row))
            except (ValueError, KeyError, TypeError) as exc:
                logger.error("Skipping unreadable checkpoint job row %s: %s", row["job_id"], exc)
        return jobs

    async def load_pending(self) -> list[CheckpointJob]:
        return await self._select(
            "status = ANY($1::text[])",
            "queued_at ASC",
            sorted(s.value for s in PENDING_STATUSES),
        )

    async def load_dead_letters(self) -> list[CheckpointJob]:
        return await self._select(
            "status = $1", "updated_at DESC", JobStatus.MANUAL_INTERVENTION.value
        )

    async def get(self, job_id: str) -> CheckpointJob | None:
        jobs = await self._select("job_id = $1", "job_id", job_id)
        return jobs[0] if jobs else None

    async def upsert(self, job: CheckpointJob) -> None:
        await self._pool.execute(
            f"""
            INSERT INTO {self._table}
                (job_id, session_id, payload, status, attempts, last_error, queued_at, updated_at)
            VALUES ($1, $2, $3::jsonb, $4, $5, $6, $7, $8)
            ON CONFLICT (job_id) DO UPDATE SET
                session_id = EXCLUDED.session_id,
                payload = EXCLUDED.payload,
                status = EXCLUDED.status,
                attempts = EXCLUDED.attempts,
                last_error = EXCLUDED.last_error,
                updated_at = EXCLUDED.updated_at
            """,
            job.id,
            job.session_id,
            json.dumps(job.payload.to_dict()),
            job.status.value,
            job.attempts,
            job.last_error,
            job.queued_at,
            job.updated_at,
        )

    async def claim(self, job: CheckpointJob) -> bool:
        result = await self._pool.execute(
            f"UPDATE {self._table} SET status = $1, attempts = $2, last_error = $3, "
            f"updated_at = $4 WHERE job_id = $5 AND status = ANY($6::text[])",
            JobStatus.RUNNING.value,
            job.attempts,
            job.last_error,
            job.updated_at,
            job.id,
            sorted(s.value for s in CLAIMABLE_STATUSES),
        )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return str(result).split()[-1] == "1"

    async def delete(self, job_id: str) -> None:
        await self._pool.execute(f"DELETE FROM {self._table} WHERE job_id = $1", job_id)

    async def close(self) -> None:
        if self._owns_pool:
            await self._pool.close()
