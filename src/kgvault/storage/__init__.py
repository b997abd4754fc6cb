"""Artifact persistence over local disk, memory, S3 and GCS.

Code against StorageProvider; look instances up through StorageRegistry.
"""

from kgvault.storage.base import (
    BackupFileStat,
    BaseStorageProvider,
    ReadOptions,
    StorageProvider,
    WriteOptions,
    normalize_path,
)
from kgvault.storage.factory import build_provider, build_registry
from kgvault.storage.gcs import GCSStorageProvider
from kgvault.storage.local import LocalFilesystemStorageProvider
from kgvault.storage.memory import MemoryStorageProvider
from kgvault.storage.registry import StorageRegistry
from kgvault.storage.s3 import S3Credentials, S3StorageProvider

__all__ = [
    "BackupFileStat",
    "BaseStorageProvider",
    "GCSStorageProvider",
    "LocalFilesystemStorageProvider",
    "MemoryStorageProvider",
    "ReadOptions",
    "S3Credentials",
    "S3StorageProvider",
    "StorageProvider",
    "StorageRegistry",
    "WriteOptions",
    "build_provider",
    "build_registry",
    "normalize_path",
]
