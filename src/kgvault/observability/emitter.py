"""Singleton emitter: configure once, emit everywhere.

emit() is the only call modules need. It is a no-op until configure()
runs, so tests and library users pay nothing for events they ignore.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pyventus.events import EventEmitter

if TYPE_CHECKING:
    from kgvault.observability.config import ObservabilityConfig

_emitter: EventEmitter | None = None
_configured: bool = False


def emit(event: Any) -> None:
    """Fire-and-forget event emission. No-op if not configured."""
    if _emitter is not None:
        _emitter.emit(event)


def configure(config: ObservabilityConfig | None = None) -> EventEmitter:
    """Set up logging, the emitter and the always-on log subscriber.

    Idempotent: a second call returns the existing emitter.
    """
    global _emitter, _configured

    if _configured and _emitter is not None:
        return _emitter

    from kgvault.observability.config import ObservabilityConfig
    from kgvault.observability.logging import setup_logging

    cfg = config or ObservabilityConfig()
    setup_logging(cfg)

    from pyventus.core.processing.asyncio import AsyncIOProcessingService

    from kgvault.observability.linker import VaultEventLinker
    from kgvault.observability.subscribers.structlog_sub import register_structlog_subscriber

    _emitter = EventEmitter(
        event_linker=VaultEventLinker,
        event_processor=AsyncIOProcessingService(),
    )
    register_structlog_subscriber()

    _configured = True
    return _emitter


def is_configured() -> bool:
    return _configured


def reset() -> None:
    """Reset for testing."""
    global _emitter, _configured

    from kgvault.observability.linker import VaultEventLinker
    from kgvault.observability.logging import shutdown_logging

    shutdown_logging()
    VaultEventLinker.remove_all()
    _emitter = None
    _configured = False
