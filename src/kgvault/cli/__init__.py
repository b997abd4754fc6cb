"""kgvault CLI -- typer-based operator interface.

Commands:
    kgvault storage ls/stat/check                        Inspect storage providers
    kgvault jobs pending/dead-letters/requeue/discard    Manage checkpoint jobs
"""

from __future__ import annotations

import os

import typer

from kgvault.cli import jobs_cmd, storage_cmd

app = typer.Typer(
    name="kgvault",
    help="Operate checkpoint storage and durable checkpoint jobs.",
    no_args_is_help=True,
)

app.add_typer(storage_cmd.app, name="storage")
app.add_typer(jobs_cmd.app, name="jobs")


@app.callback()
def _setup(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    from kgvault.observability import ObservabilityConfig
    from kgvault.observability.logging import setup_logging

    config = ObservabilityConfig(log_level=os.environ.get("KGVAULT_LOG_LEVEL", "WARNING"))
    if verbose:
        config.log_level = "DEBUG"
    setup_logging(config)


def main() -> None:
    """Entry point for the kgvault CLI."""
    app()
