"""Error taxonomy shared by storage, jobs and the temporal validator.

Storage backends rewrap every client-library exception into a
StorageError subclass, keeping the original on ``cause`` (and as
``__cause__`` via ``raise ... from``). Callers never branch on boto3 or
google-cloud exception shapes.

Validation issues and exhausted jobs are reported, not raised:
see TemporalValidationReport and the dead-letter rows.
"""

from __future__ import annotations


class KGVaultError(Exception):
    """Root of all kgvault errors."""


class StorageError(KGVaultError):
    """A storage backend call failed.

    ``provider_id`` names the provider instance, ``path`` the logical
    path involved (if any), ``cause`` the backend exception.
    """

    def __init__(
        self,
        message: str,
        *,
        provider_id: str | None = None,
        path: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.provider_id = provider_id
        self.path = path
        self.cause = cause


class NotFoundError(StorageError):
    """The requested object does not exist."""


class StorageUnavailableError(StorageError):
    """Backend unreachable, or missing while auto-create is disabled."""


class CapabilityMissingError(KGVaultError):
    """An optional backend dependency is not installed."""

    def __init__(self, capability: str, module: str, extra: str) -> None:
        super().__init__(
            f"{capability} support requires the optional dependency {module!r}. "
            f"Install it with: pip install 'kgvault[{extra}]'"
        )
        self.capability = capability
        self.module = module
        self.extra = extra


class StorageConfigError(KGVaultError):
    """Storage providers are misconfigured. Fatal at startup."""


class CheckpointJobError(KGVaultError):
    """A checkpoint job operation cannot proceed."""
