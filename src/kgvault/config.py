"""Runtime configuration: env vars + YAML provider definitions.

Environment is read once, when load_config() (or a dataclass default
factory) runs. Components receive the resulting dataclasses at
construction and never consult os.environ themselves.

Env vars use the KGVAULT_ prefix:
    KGVAULT_MAX_ATTEMPTS=3            checkpoint job attempt ceiling
    KGVAULT_RETRY_DELAY=5.0           seconds between attempts
    KGVAULT_JOB_CONCURRENCY=1         concurrent checkpoint jobs
    KGVAULT_ARTIFACT_PROVIDER=        registry id for checkpoint artifacts
    KGVAULT_VALIDATOR_BATCH_SIZE=25   entities per page (max 100)
    KGVAULT_TIMELINE_LIMIT=200        versions per timeline (max 1000)
    KGVAULT_AUTO_REPAIR=false         repair missing previous-version links
    KGVAULT_BACKUP_DIR=./backups      local provider base path
    KGVAULT_STORAGE_CONFIG=~/.kgvault/storage.yaml
    KGVAULT_JOBS_DSN=                 Postgres DSN for the job store
    KGVAULT_JOBS_DB=~/.kgvault/jobs.db  SQLite fallback

storage.yaml layout:

    default_provider: archive
    providers:
      archive:
        type: s3
        options: {bucket: kg-backups, prefix: backups, region: eu-west-1}
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from kgvault.errors import StorageConfigError

_TRUTHY = {"1", "true", "on", "yes"}

MAX_VALIDATOR_BATCH_SIZE = 100
MAX_TIMELINE_LIMIT = 1000


def _int_env(var: str, default: int) -> int:
    raw = os.environ.get(var)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as err:
        raise StorageConfigError(f"{var}={raw!r} is not a valid integer") from err


def _float_env(var: str, default: float) -> float:
    raw = os.environ.get(var)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as err:
        raise StorageConfigError(f"{var}={raw!r} is not a valid number") from err


def _bool_env(var: str, default: bool) -> bool:
    raw = os.environ.get(var)
    if raw is None or raw == "":
        return default
    return raw.lower() in _TRUTHY


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass
class CoordinatorConfig:
    """Retry and concurrency knobs for the checkpoint job coordinator."""

    max_attempts: int = field(default_factory=lambda: _int_env("KGVAULT_MAX_ATTEMPTS", 3))
    retry_delay: float = field(default_factory=lambda: _float_env("KGVAULT_RETRY_DELAY", 5.0))
    concurrency: int = field(default_factory=lambda: _int_env("KGVAULT_JOB_CONCURRENCY", 1))
    artifact_provider: str | None = field(
        default_factory=lambda: os.environ.get("KGVAULT_ARTIFACT_PROVIDER") or None
    )

    def __post_init__(self) -> None:
        self.max_attempts = max(1, int(self.max_attempts))
        self.retry_delay = max(0.1, float(self.retry_delay))
        self.concurrency = max(1, int(self.concurrency))


@dataclass
class ValidatorConfig:
    """Paging and repair defaults for the version-chain validator."""

    batch_size: int = field(default_factory=lambda: _int_env("KGVAULT_VALIDATOR_BATCH_SIZE", 25))
    timeline_limit: int = field(default_factory=lambda: _int_env("KGVAULT_TIMELINE_LIMIT", 200))
    auto_repair: bool = field(default_factory=lambda: _bool_env("KGVAULT_AUTO_REPAIR", False))
    dry_run: bool = False

    def __post_init__(self) -> None:
        self.batch_size = clamp(int(self.batch_size), 1, MAX_VALIDATOR_BATCH_SIZE)
        self.timeline_limit = clamp(int(self.timeline_limit), 1, MAX_TIMELINE_LIMIT)


@dataclass
class ProviderDefinition:
    """One entry of the ``providers`` map in storage.yaml."""

    type: str = "local"
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class StorageConfig:
    default_provider: str = "local"
    local_base_path: str = field(
        default_factory=lambda: os.environ.get("KGVAULT_BACKUP_DIR", "./backups")
    )
    local_allow_create: bool = True
    providers: dict[str, ProviderDefinition] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path | None = None) -> StorageConfig:
        """Read provider definitions from YAML. Missing file -> local only."""
        file_path = path or Path(
            os.environ.get("KGVAULT_STORAGE_CONFIG", "~/.kgvault/storage.yaml")
        ).expanduser()
        config = cls()
        if not file_path.exists():
            return config

        raw = yaml.safe_load(file_path.read_text()) or {}
        if not isinstance(raw, dict):
            raise StorageConfigError(f"{file_path}: expected a mapping at the top level")

        if raw.get("default_provider"):
            config.default_provider = str(raw["default_provider"])
        local = raw.get("local") or {}
        if isinstance(local, dict):
            if local.get("base_path"):
                config.local_base_path = str(local["base_path"])
            if "allow_create" in local:
                config.local_allow_create = bool(local["allow_create"])

        providers = raw.get("providers") or {}
        if not isinstance(providers, dict):
            raise StorageConfigError(f"{file_path}: 'providers' must be a mapping")
        for provider_id, definition in providers.items():
            definition = definition or {}
            config.providers[str(provider_id)] = ProviderDefinition(
                type=str(definition.get("type", "local")).lower(),
                options=dict(definition.get("options") or {}),
            )
        return config


@dataclass
class JobStoreConfig:
    dsn: str | None = field(default_factory=lambda: os.environ.get("KGVAULT_JOBS_DSN") or None)
    sqlite_path: str = field(
        default_factory=lambda: os.environ.get("KGVAULT_JOBS_DB", "~/.kgvault/jobs.db")
    )
    table: str = "session_checkpoint_jobs"

    def __repr__(self) -> str:
        """Redact the DSN so credentials never reach the logs."""
        dsn = "'***'" if self.dsn else "None"
        return (
            f"JobStoreConfig(dsn={dsn}, sqlite_path={self.sqlite_path!r}, "
            f"table={self.table!r})"
        )


@dataclass
class VaultConfig:
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig.load)
    jobs: JobStoreConfig = field(default_factory=JobStoreConfig)


def load_config(storage_path: Path | None = None) -> VaultConfig:
    """Build the full configuration from the environment, once."""
    return VaultConfig(storage=StorageConfig.load(storage_path))
