"""CLI error handling."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

import typer

from kgvault.errors import KGVaultError

T = TypeVar("T")


def handle_error(msg: str) -> None:
    """Print an error message and exit."""
    typer.echo(f"Error: {msg}", err=True)
    raise typer.Exit(1)


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion; kgvault errors exit with status 1."""
    try:
        return asyncio.run(coro)
    except KGVaultError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1) from exc
