"""StorageRegistry: named provider instances with one designated default.

The default id is fixed at construction. get_default() failing is a
startup configuration error, not something callers retry.
"""

from __future__ import annotations

import logging

from kgvault.errors import StorageConfigError
from kgvault.storage.base import StorageProvider

logger = logging.getLogger(__name__)


class StorageRegistry:
    """Registry of storage providers keyed by id."""

    def __init__(
        self,
        default_id: str,
        providers: dict[str, StorageProvider] | None = None,
    ) -> None:
        if not default_id:
            raise StorageConfigError("StorageRegistry requires a default provider id")
        self._default_id = default_id
        self._providers: dict[str, StorageProvider] = dict(providers or {})

    @classmethod
    def with_default(cls, provider: StorageProvider) -> StorageRegistry:
        """Registry whose default is ``provider``, registered under its own id."""
        return cls(provider.id, {provider.id: provider})

    @property
    def default_id(self) -> str:
        return self._default_id

    def register(self, provider_id: str, provider: StorageProvider) -> None:
        if provider_id in self._providers and self._providers[provider_id] is not provider:
            logger.info("Replacing storage provider %s", provider_id)
        self._providers[provider_id] = provider

    def get(self, provider_id: str) -> StorageProvider | None:
        return self._providers.get(provider_id)

    def get_default(self) -> StorageProvider:
        provider = self._providers.get(self._default_id)
        if provider is None:
            raise StorageConfigError(
                f"Default storage provider {self._default_id!r} is not registered. "
                f"Registered: {sorted(self._providers)}"
            )
        return provider

    def resolve(self, provider_id: str | None = None) -> StorageProvider:
        """Provider by id, or the default when ``provider_id`` is None."""
        if provider_id is None:
            return self.get_default()
        provider = self.get(provider_id)
        if provider is None:
            raise StorageConfigError(f"Unknown storage provider: {provider_id!r}")
        return provider

    def ids(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)
