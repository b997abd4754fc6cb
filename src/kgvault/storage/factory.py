"""Build providers and the registry from StorageConfig.

Provider definitions come from storage.yaml. A definition that fails to
build is logged and skipped; if it was meant to be the default,
get_default() reports that at startup.
"""

from __future__ import annotations

import logging
from typing import Any

from kgvault.config import ProviderDefinition, StorageConfig
from kgvault.errors import StorageConfigError
from kgvault.storage.base import StorageProvider
from kgvault.storage.gcs import GCSStorageProvider
from kgvault.storage.local import LocalFilesystemStorageProvider
from kgvault.storage.memory import MemoryStorageProvider
from kgvault.storage.registry import StorageRegistry
from kgvault.storage.s3 import S3Credentials, S3StorageProvider

logger = logging.getLogger(__name__)


def _str(options: dict[str, Any], *names: str) -> str | None:
    for name in names:
        value = options.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _bool(options: dict[str, Any], *names: str) -> bool | None:
    for name in names:
        value = options.get(name)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "on", "yes"}
    return None


def _int(options: dict[str, Any], *names: str) -> int | None:
    for name in names:
        value = options.get(name)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value)
    return None


def _s3_credentials(options: dict[str, Any]) -> S3Credentials | None:
    access_key = _str(options, "access_key_id", "accessKeyId")
    secret_key = _str(options, "secret_access_key", "secretAccessKey")
    if not access_key or not secret_key:
        return None
    return S3Credentials(
        access_key_id=access_key,
        secret_access_key=secret_key,
        session_token=_str(options, "session_token", "sessionToken"),
    )


def build_provider(
    provider_id: str,
    definition: ProviderDefinition,
    config: StorageConfig | None = None,
) -> StorageProvider:
    """Instantiate one provider from its YAML definition."""
    kind = (definition.type or "local").lower()
    options = definition.options

    if kind == "local":
        base_path = _str(options, "base_path", "basePath") or (
            config.local_base_path if config else "./backups"
        )
        allow_create = _bool(options, "allow_create", "allowCreate")
        if allow_create is None:
            allow_create = config.local_allow_create if config else True
        return LocalFilesystemStorageProvider(base_path, allow_create=allow_create, id=provider_id)

    if kind == "memory":
        return MemoryStorageProvider(id=provider_id, prefix=_str(options, "prefix"))

    if kind == "s3":
        bucket = _str(options, "bucket")
        if not bucket:
            raise StorageConfigError(f"S3 storage provider {provider_id!r} requires a bucket name")
        kwargs: dict[str, Any] = {}
        concurrency = _int(options, "upload_concurrency", "uploadConcurrency")
        if concurrency is not None:
            kwargs["upload_concurrency"] = concurrency
        part_size = _int(options, "upload_part_size", "uploadPartSizeBytes")
        if part_size is not None:
            kwargs["upload_part_size"] = part_size
        return S3StorageProvider(
            bucket,
            id=provider_id,
            prefix=_str(options, "prefix"),
            region=_str(options, "region"),
            endpoint=_str(options, "endpoint"),
            force_path_style=bool(_bool(options, "force_path_style", "forcePathStyle")),
            credentials=_s3_credentials(options),
            auto_create=bool(_bool(options, "auto_create", "autoCreate")),
            make_public=bool(_bool(options, "make_public", "public")),
            server_side_encryption=_str(options, "server_side_encryption", "serverSideEncryption"),
            kms_key_id=_str(options, "kms_key_id", "kmsKeyId"),
            **kwargs,
        )

    if kind == "gcs":
        bucket = _str(options, "bucket")
        if not bucket:
            raise StorageConfigError(f"GCS storage provider {provider_id!r} requires a bucket name")
        info = options.get("credentials")
        return GCSStorageProvider(
            bucket,
            id=provider_id,
            prefix=_str(options, "prefix"),
            project=_str(options, "project", "projectId"),
            location=_str(options, "location", "region"),
            credentials_file=_str(options, "credentials_file", "keyFilename"),
            credentials_info=info if isinstance(info, dict) else None,
            auto_create=bool(_bool(options, "auto_create", "autoCreate")),
            make_public=bool(_bool(options, "make_public", "public")),
        )

    raise StorageConfigError(f"Unsupported storage provider type: {definition.type!r}")


def build_registry(config: StorageConfig) -> StorageRegistry:
    """Local provider under ``"local"`` plus every configured provider."""
    registry = StorageRegistry(config.default_provider)
    registry.register(
        "local",
        LocalFilesystemStorageProvider(
            config.local_base_path, allow_create=config.local_allow_create, id="local"
        ),
    )
    for provider_id, definition in config.providers.items():
        try:
            registry.register(provider_id, build_provider(provider_id, definition, config))
        except (StorageConfigError, ValueError) as exc:
            logger.error("Failed to register storage provider %s: %s", provider_id, exc)
    return registry
