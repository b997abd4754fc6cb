"""Lazy loading of optional storage client libraries.

Each capability is resolved once per process: the first require() call
imports the module (or records that it is missing) and later calls
reuse that outcome. A missing library raises CapabilityMissingError
naming the pip extra, never a bare ImportError at first use.
"""

from __future__ import annotations

import importlib
import threading
from dataclasses import dataclass
from types import ModuleType

from kgvault.errors import CapabilityMissingError


@dataclass(frozen=True)
class Capability:
    name: str
    module: str
    extra: str


S3 = Capability(name="S3", module="boto3", extra="s3")
GCS = Capability(name="GCS", module="google.cloud.storage", extra="gcs")

_resolved: dict[str, ModuleType | None] = {}
_lock = threading.Lock()


def require(capability: Capability) -> ModuleType:
    """Return the imported module for ``capability`` or raise CapabilityMissingError."""
    with _lock:
        if capability.module not in _resolved:
            try:
                _resolved[capability.module] = importlib.import_module(capability.module)
            except ImportError:
                _resolved[capability.module] = None
        module = _resolved[capability.module]
    if module is None:
        raise CapabilityMissingError(capability.name, capability.module, capability.extra)
    return module


def reset_capabilities() -> None:
    """Forget resolved capabilities. For testing."""
    with _lock:
        _resolved.clear()
