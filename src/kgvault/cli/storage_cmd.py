"""CLI commands for inspecting storage providers."""

from __future__ import annotations

import json

import typer

from kgvault.cli._config import get_config, get_registry
from kgvault.cli._errors import handle_error, run
from kgvault.errors import CapabilityMissingError, StorageError
from kgvault.storage.base import BackupFileStat, StorageProvider
from kgvault.storage.registry import StorageRegistry

app = typer.Typer(help="Inspect backup storage providers.")


async def _registry() -> StorageRegistry:
    return get_registry(get_config())


def _provider(provider_id: str | None) -> StorageProvider:
    return get_registry(get_config()).resolve(provider_id)


@app.command("ls")
def list_artifacts(
    prefix: str = typer.Argument("", help="Logical path prefix, e.g. 'checkpoints/'."),
    provider: str | None = typer.Option(None, "--provider", "-p", help="Provider id."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """List artifact paths under a prefix."""

    async def _collect() -> list[str]:
        target = _provider(provider)
        return [path async for path in target.list(prefix)]

    paths = run(_collect())
    if as_json:
        typer.echo(json.dumps(paths))
        return
    if not paths:
        typer.echo("No artifacts found.")
        return
    for path in paths:
        typer.echo(path)


@app.command()
def stat(
    path: str = typer.Argument(..., help="Logical artifact path."),
    provider: str | None = typer.Option(None, "--provider", "-p", help="Provider id."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Show size and modification time of one artifact."""

    async def _stat() -> BackupFileStat | None:
        return await _provider(provider).stat(path)

    info = run(_stat())
    if info is None:
        handle_error(f"{path} not found")
        return
    if as_json:
        typer.echo(
            json.dumps(
                {
                    "path": info.path,
                    "size": info.size,
                    "modified_at": info.modified_at.isoformat(),
                }
            )
        )
        return
    typer.echo(f"Path:      {info.path}")
    typer.echo(f"Size:      {info.size} bytes")
    typer.echo(f"Modified:  {info.modified_at.isoformat()}")


@app.command()
def check() -> None:
    """Run ensure_ready() on every configured provider."""
    registry = run(_registry())

    async def _check_all() -> list[tuple[str, str | None]]:
        results = []
        for provider_id in registry.ids():
            try:
                await registry.resolve(provider_id).ensure_ready()
                results.append((provider_id, None))
            except (StorageError, CapabilityMissingError) as exc:
                results.append((provider_id, str(exc)))
        return results

    results = run(_check_all())
    failed = 0
    for provider_id, error in results:
        marker = "*" if provider_id == registry.default_id else " "
        if error is None:
            typer.echo(f"{marker} {provider_id}: ok")
        else:
            failed += 1
            typer.echo(f"{marker} {provider_id}: FAILED ({error})")
    if failed:
        raise typer.Exit(1)
