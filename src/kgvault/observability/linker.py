"""VaultEventLinker: isolated pyventus namespace for kgvault events."""

from __future__ import annotations

from pyventus.events import EventLinker


class VaultEventLinker(EventLinker):
    """All kgvault subscribers register here, apart from other pyventus users."""

    pass
