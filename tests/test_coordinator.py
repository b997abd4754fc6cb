"""Tests for CheckpointJobCoordinator: execution, retries, dead letters, rehydration."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from kgvault.checkpoints import CheckpointManager
from kgvault.config import CoordinatorConfig
from kgvault.errors import CheckpointJobError
from kgvault.history import InMemoryHistoryService
from kgvault.jobs import (
    CheckpointJob,
    CheckpointJobCoordinator,
    CheckpointJobPayload,
    InMemoryCheckpointJobStore,
    JobStatus,
)
from kgvault.observability.events import (
    CheckpointJobAttemptFailed,
    CheckpointJobCompleted,
    CheckpointJobDeadLettered,
    CheckpointJobEnqueued,
    CheckpointJobsRehydrated,
    CheckpointJobStarted,
)


class FlakyHistory(InMemoryHistoryService):
    """create_checkpoint fails the first ``failures`` calls."""

    def __init__(self, failures: int = 0) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def create_checkpoint(self, seed_entity_ids, reason="manual", hop_count=2, window=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"graph unavailable ({self.calls})")
        return await super().create_checkpoint(seed_entity_ids, reason, hop_count, window)


class BrokenAnnotations(InMemoryHistoryService):
    async def annotate_session_checkpoint(self, *args, **kwargs):
        raise RuntimeError("annotation store down")


class FailingUpsertStore(InMemoryCheckpointJobStore):
    async def upsert(self, job):
        raise ConnectionError("database gone")


class DroppedPendingWriteStore(InMemoryCheckpointJobStore):
    """The first write of a pending row is lost."""

    def __init__(self) -> None:
        super().__init__()
        self.dropped = 0

    async def upsert(self, job):
        if job.status is JobStatus.PENDING and not self.dropped:
            self.dropped += 1
            raise ConnectionError("connection reset")
        await super().upsert(job)


@pytest.fixture
def events(monkeypatch) -> list:
    captured: list = []
    monkeypatch.setattr("kgvault.jobs.coordinator.emit", captured.append)
    return captured


@pytest.fixture
def config() -> CoordinatorConfig:
    return CoordinatorConfig(max_attempts=3, retry_delay=0.1, concurrency=1)


def payload(session_id: str = "sess-1", seeds=("e1",)) -> CheckpointJobPayload:
    return CheckpointJobPayload(session_id=session_id, seed_entity_ids=seeds, reason="session_end")


def of_type(events: list, cls: type) -> list:
    return [e for e in events if isinstance(e, cls)]


def seeded(history: InMemoryHistoryService) -> InMemoryHistoryService:
    history.add_entity("e1", type="function", name="E1")
    history.add_entity("e2", type="function", name="E2")
    history.add_relationship("e1", "e2")
    return history


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSuccess:
    async def test_job_completes_and_row_deleted(self, config, events):
        history = seeded(InMemoryHistoryService())
        store = InMemoryCheckpointJobStore()
        coordinator = CheckpointJobCoordinator(history, store, config=config)

        job_id = await coordinator.enqueue(payload())
        await coordinator.idle(timeout=5)

        assert await store.get(job_id) is None
        [checkpoint] = await history.list_checkpoints()
        assert checkpoint.seed_entity_ids == ["e1"]
        assert checkpoint.reason == "session_end"

        metrics = coordinator.get_metrics()
        assert (metrics.enqueued, metrics.completed, metrics.failed, metrics.retries) == (1, 1, 0, 0)

        [completed] = of_type(events, CheckpointJobCompleted)
        assert completed.job_id == job_id
        assert completed.checkpoint_id == checkpoint.id
        assert completed.attempts == 1
        assert completed.artifact_path is None
        assert len(of_type(events, CheckpointJobEnqueued)) == 1
        assert len(of_type(events, CheckpointJobStarted)) == 1
        await coordinator.stop()

    async def test_annotations_pending_then_completed(self, config, events):
        history = seeded(InMemoryHistoryService())
        coordinator = CheckpointJobCoordinator(history, config=config)
        job_id = await coordinator.enqueue(payload(seeds=("e2", "e1")))
        await coordinator.idle(timeout=5)

        statuses = [a.status for a in history.annotations]
        assert statuses == ["pending", "completed"]
        done = history.annotations[-1]
        assert done.session_id == "sess-1"
        assert done.seed_entity_ids == ["e1", "e2"]
        assert done.checkpoint_id is not None
        assert done.details["job_id"] == job_id
        assert done.details["attempts"] == 1
        await coordinator.stop()

    async def test_no_annotations_without_seeds(self, config, events):
        history = InMemoryHistoryService()
        coordinator = CheckpointJobCoordinator(history, config=config)
        await coordinator.enqueue(payload(seeds=()))
        await coordinator.idle(timeout=5)
        assert history.annotations == []
        assert coordinator.get_metrics().completed == 1
        await coordinator.stop()

    async def test_enqueue_accepts_dict(self, config, events):
        history = seeded(InMemoryHistoryService())
        coordinator = CheckpointJobCoordinator(history, config=config)
        await coordinator.enqueue({"session_id": "sess-9", "seed_entity_ids": ["e1"]})
        await coordinator.idle(timeout=5)
        assert coordinator.get_metrics().completed == 1
        await coordinator.stop()

    async def test_job_id_format(self, config, events):
        coordinator = CheckpointJobCoordinator(InMemoryHistoryService(), config=config)
        job_id = await coordinator.enqueue(payload())
        assert job_id.startswith("checkpoint_job_")
        await coordinator.idle(timeout=5)
        await coordinator.stop()

    async def test_with_manager_writes_artifact(self, registry, memory_provider, config, events):
        history = seeded(InMemoryHistoryService())
        manager = CheckpointManager(history, registry)
        coordinator = CheckpointJobCoordinator(history, manager=manager, config=config)
        await coordinator.enqueue(payload())
        await coordinator.idle(timeout=5)

        [completed] = of_type(events, CheckpointJobCompleted)
        assert completed.artifact_path == f"checkpoints/{completed.checkpoint_id}.json"
        assert await memory_provider.exists(completed.artifact_path)
        await coordinator.stop()


# ---------------------------------------------------------------------------
# Retries and dead letters
# ---------------------------------------------------------------------------


class TestRetries:
    async def test_retry_then_success(self, config, events):
        history = seeded(FlakyHistory(failures=1))
        store = InMemoryCheckpointJobStore()
        coordinator = CheckpointJobCoordinator(history, store, config=config)

        job_id = await coordinator.enqueue(payload())
        await coordinator.idle(timeout=5)

        assert history.calls == 2
        assert await store.get(job_id) is None
        metrics = coordinator.get_metrics()
        assert metrics.retries == 1
        assert metrics.completed == 1
        [failed] = of_type(events, CheckpointJobAttemptFailed)
        assert failed.retrying is True
        assert failed.attempts == 1
        assert "graph unavailable (1)" in failed.error
        [completed] = of_type(events, CheckpointJobCompleted)
        assert completed.attempts == 2
        await coordinator.stop()

    async def test_dead_letter_after_max_attempts(self, config, events):
        history = seeded(FlakyHistory(failures=10))
        store = InMemoryCheckpointJobStore()
        coordinator = CheckpointJobCoordinator(history, store, config=config)

        job_id = await coordinator.enqueue(payload())
        await coordinator.idle(timeout=5)

        assert history.calls == 3
        row = await store.get(job_id)
        assert row.status is JobStatus.MANUAL_INTERVENTION
        assert row.attempts == 3
        assert row.last_error == "graph unavailable (3)"

        metrics = coordinator.get_metrics()
        assert (metrics.completed, metrics.failed, metrics.retries) == (0, 1, 2)
        assert [j.id for j in coordinator.get_dead_letters()] == [job_id]

        failures = of_type(events, CheckpointJobAttemptFailed)
        assert [f.retrying for f in failures] == [True, True, False]
        [dead] = of_type(events, CheckpointJobDeadLettered)
        assert dead.attempts == 3

        assert history.annotations[-1].status == "manual_intervention"
        assert history.annotations[-1].details["error"] == "graph unavailable (3)"
        await coordinator.stop()

    async def test_single_attempt_budget(self, events):
        history = seeded(FlakyHistory(failures=1))
        coordinator = CheckpointJobCoordinator(
            history, config=CoordinatorConfig(max_attempts=1, retry_delay=0.1)
        )
        await coordinator.enqueue(payload())
        await coordinator.idle(timeout=5)
        assert history.calls == 1
        assert coordinator.get_metrics().failed == 1
        await coordinator.stop()

    async def test_requeue_dead_letter_runs_again(self, config, events):
        history = seeded(FlakyHistory(failures=3))
        store = InMemoryCheckpointJobStore()
        coordinator = CheckpointJobCoordinator(history, store, config=config)
        job_id = await coordinator.enqueue(payload())
        await coordinator.idle(timeout=5)

        requeued = await coordinator.requeue(job_id)
        assert requeued.attempts == 0
        await coordinator.idle(timeout=5)

        assert await store.get(job_id) is None
        assert coordinator.get_dead_letters() == []
        assert coordinator.get_metrics().completed == 1
        await coordinator.stop()

    async def test_discard_dead_letter(self, config, events):
        history = seeded(FlakyHistory(failures=10))
        store = InMemoryCheckpointJobStore()
        coordinator = CheckpointJobCoordinator(
            history, store, config=CoordinatorConfig(max_attempts=1, retry_delay=0.1)
        )
        job_id = await coordinator.enqueue(payload())
        await coordinator.idle(timeout=5)

        await coordinator.discard(job_id)
        assert await store.get(job_id) is None
        assert coordinator.get_dead_letters() == []
        await coordinator.stop()

    async def test_discard_rejects_live_job(self, config, events):
        store = InMemoryCheckpointJobStore()
        await store.upsert(CheckpointJob(id="q1", payload=payload()))
        coordinator = CheckpointJobCoordinator(InMemoryHistoryService(), store, config=config)
        with pytest.raises(CheckpointJobError, match="not manual_intervention"):
            await coordinator.discard("q1")
        with pytest.raises(CheckpointJobError, match="not found"):
            await coordinator.discard("ghost")


# ---------------------------------------------------------------------------
# Durability
# ---------------------------------------------------------------------------


class TestRehydration:
    async def test_running_rows_reclaimed_and_exhausted_rows_dead_lettered(self, config, events):
        history = seeded(InMemoryHistoryService())
        store = InMemoryCheckpointJobStore()
        t0 = datetime(2026, 1, 1, tzinfo=UTC)
        await store.upsert(
            CheckpointJob(
                id="crashed",
                payload=payload("s1"),
                status=JobStatus.RUNNING,
                attempts=1,
                queued_at=t0,
                updated_at=t0,
            )
        )
        await store.upsert(
            CheckpointJob(
                id="exhausted",
                payload=payload("s2"),
                status=JobStatus.RUNNING,
                attempts=3,
                last_error="timeout",
                queued_at=t0,
                updated_at=t0,
            )
        )
        await store.upsert(
            CheckpointJob(id="waiting", payload=payload("s3"), queued_at=t0, updated_at=t0)
        )

        coordinator = CheckpointJobCoordinator(history, store, config=config)
        await coordinator.start()
        await coordinator.idle(timeout=5)

        [rehydrated] = of_type(events, CheckpointJobsRehydrated)
        assert rehydrated.count == 2
        assert rehydrated.reclaimed_running == 2
        assert rehydrated.dead_lettered == 1

        assert await store.get("crashed") is None
        assert await store.get("waiting") is None
        exhausted = await store.get("exhausted")
        assert exhausted.status is JobStatus.MANUAL_INTERVENTION
        assert exhausted.last_error == "timeout"

        completed = {e.job_id: e.attempts for e in of_type(events, CheckpointJobCompleted)}
        assert completed == {"crashed": 2, "waiting": 1}
        await coordinator.stop()

    async def test_existing_dead_letters_loaded(self, config, events):
        store = InMemoryCheckpointJobStore()
        await store.upsert(
            CheckpointJob(
                id="old", payload=payload(), status=JobStatus.MANUAL_INTERVENTION, attempts=3
            )
        )
        coordinator = CheckpointJobCoordinator(InMemoryHistoryService(), store, config=config)
        await coordinator.start()
        assert [j.id for j in coordinator.get_dead_letters()] == ["old"]
        await coordinator.stop()

    async def test_start_is_idempotent(self, config, events):
        coordinator = CheckpointJobCoordinator(InMemoryHistoryService(), config=config)
        await coordinator.start()
        await coordinator.start()
        assert len(of_type(events, CheckpointJobsRehydrated)) == 1
        await coordinator.stop()


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


class TestFailureIsolation:
    async def test_enqueue_persistence_failure_propagates(self, config, events):
        coordinator = CheckpointJobCoordinator(
            InMemoryHistoryService(), FailingUpsertStore(), config=config
        )
        with pytest.raises(ConnectionError):
            await coordinator.enqueue(payload())
        assert coordinator.get_metrics().enqueued == 0
        await coordinator.stop()

    async def test_annotation_failure_does_not_fail_job(self, config, events):
        history = seeded(BrokenAnnotations())
        store = InMemoryCheckpointJobStore()
        coordinator = CheckpointJobCoordinator(history, store, config=config)
        job_id = await coordinator.enqueue(payload())
        await coordinator.idle(timeout=5)
        assert await store.get(job_id) is None
        assert coordinator.get_metrics().completed == 1
        await coordinator.stop()

    async def test_lost_pending_write_still_retries(self, config, events):
        history = seeded(FlakyHistory(failures=1))
        store = DroppedPendingWriteStore()
        coordinator = CheckpointJobCoordinator(history, store, config=config)

        job_id = await coordinator.enqueue(payload())
        await coordinator.idle(timeout=5)

        assert store.dropped == 1
        assert history.calls == 2
        assert await store.get(job_id) is None
        assert await store.load_pending() == []
        [completed] = of_type(events, CheckpointJobCompleted)
        assert completed.attempts == 2
        await coordinator.stop()

    async def test_claim_lost_skips_job(self, config, events):
        class LosingStore(InMemoryCheckpointJobStore):
            async def claim(self, job):
                return False

        history = seeded(FlakyHistory())
        coordinator = CheckpointJobCoordinator(history, LosingStore(), config=config)
        await coordinator.enqueue(payload())
        await coordinator.idle(timeout=5)
        assert history.calls == 0
        assert of_type(events, CheckpointJobStarted) == []
        await coordinator.stop()

    async def test_concurrency_bound(self, events):
        history = seeded(InMemoryHistoryService())
        coordinator = CheckpointJobCoordinator(
            history, config=CoordinatorConfig(concurrency=2, retry_delay=0.1)
        )
        for i in range(5):
            await coordinator.enqueue(payload(f"s{i}"))
            assert len(coordinator._running) <= 2
        await coordinator.idle(timeout=5)
        assert coordinator.get_metrics().completed == 5
        await coordinator.stop()
