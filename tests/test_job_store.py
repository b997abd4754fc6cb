"""Tests for checkpoint job stores (in-memory and SQLite)."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import aiosqlite
import pytest

from kgvault.errors import CheckpointJobError
from kgvault.jobs import (
    CheckpointJob,
    CheckpointJobPayload,
    CheckpointJobStore,
    InMemoryCheckpointJobStore,
    JobStatus,
    SqliteCheckpointJobStore,
    requeue_dead_letter,
)

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def make_job(
    job_id: str,
    *,
    status: JobStatus = JobStatus.QUEUED,
    minutes: int = 0,
    attempts: int = 0,
    session_id: str = "sess",
    last_error: str | None = None,
) -> CheckpointJob:
    at = T0 + timedelta(minutes=minutes)
    return CheckpointJob(
        id=job_id,
        payload=CheckpointJobPayload(session_id=session_id, seed_entity_ids=("e1", "e2")),
        status=status,
        attempts=attempts,
        last_error=last_error,
        queued_at=at,
        updated_at=at,
    )


@pytest.fixture(params=["memory", "sqlite"], ids=["memory", "sqlite"])
async def store(request, tmp_path) -> CheckpointJobStore:
    if request.param == "memory":
        s = InMemoryCheckpointJobStore()
    else:
        s = SqliteCheckpointJobStore(tmp_path / "jobs.db")
    await s.initialize()
    yield s
    await s.close()


# ---------------------------------------------------------------------------
# Protocol contract
# ---------------------------------------------------------------------------


class TestJobStoreContract:
    def test_satisfies_protocol(self, store):
        assert isinstance(store, CheckpointJobStore)

    async def test_initialize_idempotent(self, store):
        await store.initialize()

    async def test_upsert_then_get(self, store):
        await store.upsert(make_job("j1"))
        job = await store.get("j1")
        assert job is not None
        assert job.session_id == "sess"
        assert job.payload.seed_entity_ids == ("e1", "e2")
        assert job.status is JobStatus.QUEUED
        assert job.queued_at == T0

    async def test_get_missing(self, store):
        assert await store.get("nope") is None

    async def test_load_pending_oldest_first(self, store):
        await store.upsert(make_job("late", minutes=5))
        await store.upsert(make_job("early", minutes=1))
        await store.upsert(make_job("running", status=JobStatus.RUNNING, minutes=3))
        await store.upsert(make_job("retry", status=JobStatus.PENDING, minutes=2))
        await store.upsert(make_job("dead", status=JobStatus.MANUAL_INTERVENTION))
        await store.upsert(make_job("done", status=JobStatus.COMPLETED))
        pending = await store.load_pending()
        assert [j.id for j in pending] == ["early", "retry", "running", "late"]

    async def test_load_dead_letters_newest_first(self, store):
        await store.upsert(make_job("d1", status=JobStatus.MANUAL_INTERVENTION, minutes=1))
        await store.upsert(make_job("d2", status=JobStatus.MANUAL_INTERVENTION, minutes=2))
        await store.upsert(make_job("q", minutes=3))
        assert [j.id for j in await store.load_dead_letters()] == ["d2", "d1"]

    async def test_upsert_keeps_original_queued_at(self, store):
        await store.upsert(make_job("j1"))
        moved = make_job("j1", status=JobStatus.PENDING, minutes=10, attempts=1, last_error="boom")
        await store.upsert(moved)
        job = await store.get("j1")
        assert job.queued_at == T0
        assert job.updated_at == T0 + timedelta(minutes=10)
        assert job.status is JobStatus.PENDING
        assert job.attempts == 1
        assert job.last_error == "boom"

    async def test_delete(self, store):
        await store.upsert(make_job("j1"))
        await store.delete("j1")
        await store.delete("j1")
        assert await store.get("j1") is None

    async def test_get_returns_copies(self, store):
        await store.upsert(make_job("j1"))
        job = await store.get("j1")
        job.attempts = 99
        assert (await store.get("j1")).attempts == 0


# ---------------------------------------------------------------------------
# Claiming
# ---------------------------------------------------------------------------


class TestClaim:
    async def test_claim_queued(self, store):
        job = make_job("j1")
        await store.upsert(job)
        attempt = job.with_status(JobStatus.RUNNING, attempts=1)
        assert await store.claim(attempt) is True
        stored = await store.get("j1")
        assert stored.status is JobStatus.RUNNING
        assert stored.attempts == 1

    async def test_second_claim_loses(self, store):
        job = make_job("j1", status=JobStatus.PENDING)
        await store.upsert(job)
        attempt = job.with_status(JobStatus.RUNNING, attempts=1)
        assert await store.claim(attempt) is True
        assert await store.claim(attempt) is False

    @pytest.mark.parametrize(
        "status", [JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.MANUAL_INTERVENTION]
    )
    async def test_claim_non_claimable(self, store, status):
        job = make_job("j1", status=status)
        await store.upsert(job)
        assert await store.claim(job.with_status(JobStatus.RUNNING, attempts=1)) is False

    async def test_claim_missing(self, store):
        assert await store.claim(make_job("ghost")) is False


# ---------------------------------------------------------------------------
# Dead-letter requeue
# ---------------------------------------------------------------------------


class TestRequeueDeadLetter:
    async def test_requeue_resets_attempts_keeps_error(self, store):
        await store.upsert(
            make_job("d1", status=JobStatus.MANUAL_INTERVENTION, attempts=3, last_error="boom")
        )
        job = await requeue_dead_letter(store, "d1")
        assert job.status is JobStatus.QUEUED
        assert job.attempts == 0
        stored = await store.get("d1")
        assert stored.status is JobStatus.QUEUED
        assert stored.attempts == 0
        assert stored.last_error == "boom"
        assert [j.id for j in await store.load_pending()] == ["d1"]

    async def test_requeue_missing(self, store):
        with pytest.raises(CheckpointJobError, match="not found"):
            await requeue_dead_letter(store, "ghost")

    async def test_requeue_wrong_status(self, store):
        await store.upsert(make_job("q1"))
        with pytest.raises(CheckpointJobError, match="not manual_intervention"):
            await requeue_dead_letter(store, "q1")


# ---------------------------------------------------------------------------
# SQLite specifics
# ---------------------------------------------------------------------------


class TestSqliteStore:
    async def test_rows_survive_reopen(self, tmp_path):
        path = tmp_path / "jobs.db"
        first = SqliteCheckpointJobStore(path)
        await first.initialize()
        await first.upsert(make_job("j1", status=JobStatus.RUNNING, attempts=2))
        await first.close()

        second = SqliteCheckpointJobStore(path)
        await second.initialize()
        [job] = await second.load_pending()
        assert job.id == "j1"
        assert job.status is JobStatus.RUNNING
        assert job.attempts == 2
        await second.close()

    async def test_unknown_status_reads_as_queued(self, tmp_path):
        store = SqliteCheckpointJobStore(tmp_path / "jobs.db")
        await store.initialize()
        await store.upsert(make_job("j1"))
        async with aiosqlite.connect(tmp_path / "jobs.db") as conn:
            await conn.execute(
                "UPDATE session_checkpoint_jobs SET status = 'mystery' WHERE job_id = 'j1'"
            )
            await conn.commit()
        job = await store.get("j1")
        assert job.status is JobStatus.QUEUED
        await store.close()

    async def test_unreadable_payload_skipped(self, tmp_path):
        store = SqliteCheckpointJobStore(tmp_path / "jobs.db")
        await store.initialize()
        await store.upsert(make_job("good"))
        await store.upsert(make_job("bad", minutes=1))
        async with aiosqlite.connect(tmp_path / "jobs.db") as conn:
            await conn.execute(
                "UPDATE session_checkpoint_jobs SET payload = ? WHERE job_id = 'bad'",
                (json.dumps({"seed_entity_ids": ["x"]}),),
            )
            await conn.commit()
        assert [j.id for j in await store.load_pending()] == ["good"]
        await store.close()

    async def test_custom_table(self, tmp_path):
        store = SqliteCheckpointJobStore(tmp_path / "jobs.db", table="kg_jobs")
        await store.initialize()
        await store.upsert(make_job("j1"))
        assert await store.get("j1") is not None
        await store.close()

    def test_rejects_unsafe_table_name(self, tmp_path):
        with pytest.raises(ValueError, match="Invalid table name"):
            SqliteCheckpointJobStore(tmp_path / "jobs.db", table="jobs; DROP TABLE x")
