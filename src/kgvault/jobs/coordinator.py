"""Checkpoint job coordinator: claim, execute, retry, dead-letter.

State machine per job:

    queued ──claim──> running ──ok──> completed (row deleted)
                         │
                         └─fail─> pending ──retry_delay──> running ...
                                     │
                                     └─ attempts == max_attempts ─> manual_intervention

Every transition is persisted through the store before the next step.
A coordinator that starts after a crash finds ``running`` rows in
load_pending(); those attempts already count, so the rows go back to
``pending`` or straight to the dead letters when the budget is spent.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
import uuid
from collections import deque
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from kgvault.checkpoints.manager import CheckpointManager
from kgvault.config import CoordinatorConfig
from kgvault.errors import CheckpointJobError
from kgvault.history.base import HistoryService
from kgvault.jobs.store import CheckpointJobStore, InMemoryCheckpointJobStore, requeue_dead_letter
from kgvault.jobs.types import (
    CheckpointJob,
    CheckpointJobPayload,
    CoordinatorMetrics,
    JobStatus,
)
from kgvault.observability import emit
from kgvault.observability.events import (
    CheckpointJobAttemptFailed,
    CheckpointJobCompleted,
    CheckpointJobDeadLettered,
    CheckpointJobEnqueued,
    CheckpointJobsRehydrated,
    CheckpointJobStarted,
)

logger = logging.getLogger(__name__)

IDLE_POLL_INTERVAL = 0.025


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class CheckpointJobCoordinator:
    """Runs checkpoint jobs with bounded retries on top of a durable store.

    With a CheckpointManager, each job also writes the checkpoint export as
    a storage artifact; without one it only creates the checkpoint through
    the history service.

    Usage:
        coordinator = CheckpointJobCoordinator(history, store, manager=manager)
        await coordinator.start()
        job_id = await coordinator.enqueue(CheckpointJobPayload("sess-1", ("e1",)))
        await coordinator.idle()
        await coordinator.stop()
    """

    def __init__(
        self,
        history: HistoryService,
        store: CheckpointJobStore | None = None,
        *,
        manager: CheckpointManager | None = None,
        config: CoordinatorConfig | None = None,
    ) -> None:
        self.history = history
        self.store = store if store is not None else InMemoryCheckpointJobStore()
        self.manager = manager
        self.config = config or CoordinatorConfig()

        self._queue: deque[CheckpointJob] = deque()
        self._running: dict[str, asyncio.Task] = {}
        self._retry_handles: dict[str, asyncio.TimerHandle] = {}
        self._dead_letters: dict[str, CheckpointJob] = {}
        # Retries whose pending row never reached the store.
        self._unsaved: set[str] = set()
        self._metrics = CoordinatorMetrics()
        self._started = False
        self._stopping = False
        self._start_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Initialize the store and rehydrate unfinished jobs. Idempotent."""
        async with self._start_lock:
            if self._started:
                return
            self._stopping = False
            await self.store.initialize()
            await self._hydrate()
            self._started = True
        self._drain()

    async def _hydrate(self) -> None:
        known = {job.id for job in self._queue} | set(self._running)
        rehydrated = reclaimed = dead_lettered = 0

        for job in await self.store.load_pending():
            if job.id in known:
                continue
            try:
                if job.status is JobStatus.RUNNING:
                    reclaimed += 1
                if job.attempts >= self.config.max_attempts:
                    await self._dead_letter(
                        job,
                        job.last_error or "attempt limit reached before restart",
                    )
                    dead_lettered += 1
                    continue
                if job.status is JobStatus.RUNNING:
                    job = job.with_status(JobStatus.PENDING)
                    await self.store.upsert(job)
            except Exception:
                logger.exception("Failed to rehydrate checkpoint job %s", job.id)
                continue
            self._queue.append(job)
            rehydrated += 1

        self._metrics.enqueued += rehydrated
        self._dead_letters.update(
            {job.id: job for job in await self.store.load_dead_letters()}
        )
        if rehydrated or reclaimed or dead_lettered:
            logger.info(
                "Rehydrated %d checkpoint jobs (%d reclaimed from running, %d dead-lettered)",
                rehydrated,
                reclaimed,
                dead_lettered,
            )
        emit(
            CheckpointJobsRehydrated(
                count=rehydrated, reclaimed_running=reclaimed, dead_lettered=dead_lettered
            )
        )

    async def stop(self) -> None:
        """Stop scheduling. In-flight jobs run to completion; queued jobs stay persisted."""
        self._stopping = True
        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()
        self._queue.clear()
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)
        self._started = False

    async def idle(self, timeout: float = 30.0) -> None:
        """Wait until no job is queued, running or waiting for a retry."""
        if not self._started:
            await self.start()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._queue or self._running or self._retry_handles:
            if loop.time() > deadline:
                raise TimeoutError("Checkpoint job coordinator idle timeout")
            await asyncio.sleep(IDLE_POLL_INTERVAL)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def enqueue(self, payload: CheckpointJobPayload | dict[str, Any]) -> str:
        """Persist a new job and schedule it. Persistence failure propagates."""
        if not self._started:
            await self.start()
        if isinstance(payload, dict):
            payload = CheckpointJobPayload.from_dict(payload)

        job = CheckpointJob(id=self._next_job_id(), payload=payload)
        await self.store.upsert(job)

        self._metrics.enqueued += 1
        self._queue.append(job)
        logger.info(
            "Enqueued checkpoint job %s for session %s (%d seeds)",
            job.id,
            payload.session_id,
            len(payload.seed_entity_ids),
        )
        emit(
            CheckpointJobEnqueued(
                job_id=job.id,
                session_id=payload.session_id,
                seed_count=len(payload.seed_entity_ids),
                timestamp=_now_iso(),
            )
        )
        await self._annotate(job, "pending")
        self._drain()
        return job.id

    def get_metrics(self) -> CoordinatorMetrics:
        return replace(self._metrics)

    def get_dead_letters(self) -> list[CheckpointJob]:
        return sorted(self._dead_letters.values(), key=lambda j: j.updated_at, reverse=True)

    async def requeue(self, job_id: str) -> CheckpointJob:
        """Give a dead-lettered job a fresh attempt budget and schedule it."""
        job = await requeue_dead_letter(self.store, job_id)
        self._dead_letters.pop(job_id, None)
        self._metrics.enqueued += 1
        self._queue.append(job)
        self._drain()
        return job

    async def discard(self, job_id: str) -> None:
        """Drop a dead-lettered job for good."""
        job = self._dead_letters.get(job_id) or await self.store.get(job_id)
        if job is None:
            raise CheckpointJobError(f"Checkpoint job {job_id} not found")
        if job.status is not JobStatus.MANUAL_INTERVENTION:
            raise CheckpointJobError(
                f"Checkpoint job {job_id} is {job.status.value}, not manual_intervention"
            )
        await self.store.delete(job_id)
        self._dead_letters.pop(job_id, None)
        logger.info("Discarded dead-lettered checkpoint job %s", job_id)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _next_job_id(self) -> str:
        return f"checkpoint_job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"

    def _drain(self) -> None:
        while (
            not self._stopping
            and self._queue
            and len(self._running) < self.config.concurrency
        ):
            job = self._queue.popleft()
            if job.id in self._running:
                continue
            task = asyncio.create_task(self._run(job), name=f"checkpoint-job-{job.id}")
            self._running[job.id] = task
            task.add_done_callback(functools.partial(self._on_done, job.id))

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        self._running.pop(job_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Unhandled error in checkpoint job %s", job_id, exc_info=task.exception()
            )
        self._drain()

    def _schedule_retry(self, job: CheckpointJob) -> None:
        if self._stopping:
            return
        loop = asyncio.get_running_loop()
        self._retry_handles[job.id] = loop.call_later(
            self.config.retry_delay, self._retry, job
        )

    def _retry(self, job: CheckpointJob) -> None:
        self._retry_handles.pop(job.id, None)
        if self._stopping:
            return
        self._queue.append(job)
        self._drain()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _run(self, job: CheckpointJob) -> None:
        if job.id in self._unsaved:
            if not await self._persist(job, "retry_pending"):
                self._schedule_retry(job)
                return
            self._unsaved.discard(job.id)

        attempt = job.with_status(JobStatus.RUNNING, attempts=job.attempts + 1)
        try:
            claimed = await self.store.claim(attempt)
        except Exception:
            logger.exception("Failed to claim checkpoint job %s", job.id)
            self._schedule_retry(job)
            return
        if not claimed:
            logger.info("Checkpoint job %s is no longer claimable, skipping", job.id)
            return

        job = attempt
        emit(
            CheckpointJobStarted(
                job_id=job.id,
                session_id=job.session_id,
                attempt=job.attempts,
                timestamp=_now_iso(),
            )
        )

        try:
            checkpoint_id, artifact_path = await self._execute(job)
        except Exception as exc:
            await self._handle_failure(job, exc)
            return

        self._metrics.completed += 1
        await self._persist(job.with_status(JobStatus.COMPLETED, last_error=None), "completed")
        try:
            await self.store.delete(job.id)
        except Exception:
            logger.exception("Failed to delete completed checkpoint job %s", job.id)
        await self._annotate(job, "completed", checkpoint_id=checkpoint_id)

        logger.info(
            "Checkpoint job %s completed for session %s: checkpoint %s",
            job.id,
            job.session_id,
            checkpoint_id,
        )
        emit(
            CheckpointJobCompleted(
                job_id=job.id,
                session_id=job.session_id,
                checkpoint_id=checkpoint_id,
                attempts=job.attempts,
                artifact_path=artifact_path,
                timestamp=_now_iso(),
            )
        )

    async def _execute(self, job: CheckpointJob) -> tuple[str, str | None]:
        payload = job.payload
        if self.manager is not None:
            artifact = await self.manager.create(
                list(payload.seed_entity_ids),
                payload.reason,
                payload.hop_count,
                payload.window,
                provider_id=self.config.artifact_provider,
            )
            return artifact.checkpoint_id, artifact.path

        checkpoint_id = await self.history.create_checkpoint(
            list(payload.seed_entity_ids), payload.reason, payload.hop_count, payload.window
        )
        if not checkpoint_id:
            raise CheckpointJobError("Checkpoint creation returned an empty identifier")
        return checkpoint_id, None

    async def _handle_failure(self, job: CheckpointJob, exc: BaseException) -> None:
        error = _error_message(exc)
        retrying = job.attempts < self.config.max_attempts
        logger.warning(
            "Checkpoint job %s attempt %d/%d failed%s: %s",
            job.id,
            job.attempts,
            self.config.max_attempts,
            ", retrying" if retrying else "",
            error,
        )
        emit(
            CheckpointJobAttemptFailed(
                job_id=job.id,
                session_id=job.session_id,
                attempts=job.attempts,
                max_attempts=self.config.max_attempts,
                retrying=retrying,
                error=error,
                timestamp=_now_iso(),
            )
        )

        if retrying:
            self._metrics.retries += 1
            job = job.with_status(JobStatus.PENDING, last_error=error)
            if not await self._persist(job, "retry_pending"):
                self._unsaved.add(job.id)
            self._schedule_retry(job)
            return

        await self._dead_letter(job, error)

    async def _dead_letter(self, job: CheckpointJob, error: str) -> None:
        job = job.with_status(JobStatus.MANUAL_INTERVENTION, last_error=error)
        self._metrics.failed += 1
        await self._persist(job, "dead_letter")
        self._dead_letters[job.id] = job
        await self._annotate(job, "manual_intervention", error=error)

        logger.error(
            "Checkpoint job %s for session %s needs manual intervention after %d attempts: %s",
            job.id,
            job.session_id,
            job.attempts,
            error,
        )
        emit(
            CheckpointJobDeadLettered(
                job_id=job.id,
                session_id=job.session_id,
                attempts=job.attempts,
                error=error,
                timestamp=_now_iso(),
            )
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _persist(self, job: CheckpointJob, stage: str) -> bool:
        try:
            await self.store.upsert(job)
        except Exception:
            logger.exception("Failed to persist checkpoint job %s at %s", job.id, stage)
            return False
        return True

    async def _annotate(
        self,
        job: CheckpointJob,
        status: str,
        checkpoint_id: str | None = None,
        **details: Any,
    ) -> None:
        payload = job.payload
        if not payload.seed_entity_ids:
            return
        try:
            await self.history.annotate_session_checkpoint(
                payload.session_id,
                list(payload.seed_entity_ids),
                status,
                checkpoint_id=checkpoint_id,
                reason=payload.reason,
                hop_count=payload.hop_count,
                attempts=job.attempts,
                job_id=job.id,
                triggered_by=payload.triggered_by,
                **details,
            )
        except Exception:
            logger.exception(
                "Failed to annotate session %s with checkpoint status %s",
                payload.session_id,
                status,
            )
