"""CLI commands for checkpoint jobs and their dead letters."""

from __future__ import annotations

import json

import typer

from kgvault.cli._config import get_config, open_store
from kgvault.cli._errors import run
from kgvault.errors import CheckpointJobError
from kgvault.jobs.store import requeue_dead_letter
from kgvault.jobs.types import CheckpointJob, JobStatus

app = typer.Typer(help="Inspect and repair durable checkpoint jobs.")


def _echo_jobs(jobs: list[CheckpointJob], as_json: bool, empty: str) -> None:
    if as_json:
        typer.echo(json.dumps([job.to_dict() for job in jobs]))
        return
    if not jobs:
        typer.echo(empty)
        return
    for job in jobs:
        typer.echo(
            f"  {job.id}  {job.status.value:<20} session={job.session_id} "
            f"attempts={job.attempts} seeds={len(job.payload.seed_entity_ids)}"
        )
        if job.last_error:
            typer.echo(f"    error: {job.last_error.splitlines()[0][:100]}")


@app.command()
def pending(as_json: bool = typer.Option(False, "--json", help="Emit JSON.")) -> None:
    """List queued, pending and running jobs (oldest first)."""

    async def _load() -> list[CheckpointJob]:
        store = await open_store(get_config().jobs)
        try:
            return await store.load_pending()
        finally:
            await store.close()

    _echo_jobs(run(_load()), as_json, "No pending checkpoint jobs.")


@app.command("dead-letters")
def dead_letters(as_json: bool = typer.Option(False, "--json", help="Emit JSON.")) -> None:
    """List jobs that need manual intervention (most recent first)."""

    async def _load() -> list[CheckpointJob]:
        store = await open_store(get_config().jobs)
        try:
            return await store.load_dead_letters()
        finally:
            await store.close()

    _echo_jobs(run(_load()), as_json, "No dead-lettered checkpoint jobs.")


@app.command()
def requeue(job_id: str = typer.Argument(..., help="Dead-lettered job id.")) -> None:
    """Reset a dead-lettered job's attempts and queue it again."""

    async def _requeue() -> CheckpointJob:
        store = await open_store(get_config().jobs)
        try:
            return await requeue_dead_letter(store, job_id)
        finally:
            await store.close()

    job = run(_requeue())
    typer.echo(f"Requeued {job.id} (session {job.session_id}).")


@app.command()
def discard(job_id: str = typer.Argument(..., help="Dead-lettered job id.")) -> None:
    """Delete a dead-lettered job permanently."""

    async def _discard() -> None:
        store = await open_store(get_config().jobs)
        try:
            job = await store.get(job_id)
            if job is None:
                raise CheckpointJobError(f"Checkpoint job {job_id} not found")
            if job.status is not JobStatus.MANUAL_INTERVENTION:
                raise CheckpointJobError(
                    f"Checkpoint job {job_id} is {job.status.value}, not manual_intervention"
                )
            await store.delete(job_id)
        finally:
            await store.close()

    run(_discard())
    typer.echo(f"Discarded {job_id}.")
