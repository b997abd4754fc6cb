"""Structured logging: formatter x destination, composed from config.

    LogFormatter   - how records are structured (structlog or stdlib JSON)
    LogDestination - where they go (stderr or a JSONL file)

setup_logging() asks the formatter for a logging.Formatter, hands it to
the destination's handler and attaches that handler to the root logger.
Modules keep calling logging.getLogger(__name__); their records come out
structured because both formatters bridge stdlib logging.

Custom strategies can be added with register_formatter() and
register_destination() before configure() runs.
"""

from __future__ import annotations

import json
import logging
import sys
from functools import partialmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from kgvault.observability.config import ObservabilityConfig


@runtime_checkable
class LogFormatter(Protocol):
    def setup(self, config: ObservabilityConfig) -> logging.Formatter: ...

    def get_logger(self, name: str, **kwargs: Any) -> Any: ...


@runtime_checkable
class LogDestination(Protocol):
    def attach(self, formatter: logging.Formatter) -> logging.Handler: ...

    def close(self) -> None: ...


class StructlogFormatter:
    """structlog processor chain, also applied to stdlib records."""

    def setup(self, config: ObservabilityConfig) -> logging.Formatter:
        import structlog

        shared: list = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ]
        if config.log_format == "console":
            renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer()
        else:
            renderer = structlog.processors.JSONRenderer()

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                *shared,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        return structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )

    def get_logger(self, name: str, **kwargs: Any) -> Any:
        import structlog

        return structlog.get_logger(name, **kwargs)


class StdlibFormatter:
    """Plain stdlib logging with a JSON line per record."""

    def setup(self, config: ObservabilityConfig) -> logging.Formatter:
        if config.log_format == "console":
            return logging.Formatter(
                "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        return _JsonLineFormatter()

    def get_logger(self, name: str, **kwargs: Any) -> Any:
        return _KwargsLogger(logging.getLogger(name))


class _JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        line.update(getattr(record, "_structured", {}))
        if record.exc_info and record.exc_info[1]:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


class _KwargsLogger:
    """Stdlib logger accepting ``logger.info("event", key=value)``.

    The kwargs ride on the LogRecord for _JsonLineFormatter to pick up.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def log(self, level: int, event: str, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        exc_info = fields.pop("exc_info", None)
        if exc_info is True:
            exc_info = sys.exc_info()
        record = self._logger.makeRecord(
            self._logger.name, level, "(unknown)", 0, event, (), exc_info or None
        )
        record._structured = fields  # type: ignore[attr-defined]
        self._logger.handle(record)

    debug = partialmethod(log, logging.DEBUG)
    info = partialmethod(log, logging.INFO)
    warning = partialmethod(log, logging.WARNING)
    error = partialmethod(log, logging.ERROR)

    def exception(self, event: str, **fields: Any) -> None:
        fields.setdefault("exc_info", True)
        self.log(logging.ERROR, event, **fields)


class StderrDestination:
    def __init__(self, config: ObservabilityConfig) -> None:
        pass

    def attach(self, formatter: logging.Formatter) -> logging.Handler:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        return handler

    def close(self) -> None:
        pass


class JsonlFileDestination:
    """Append JSON lines to ``config.jsonl_path`` (default /tmp/kgvault.jsonl)."""

    def __init__(self, config: ObservabilityConfig) -> None:
        self._path = Path(config.jsonl_path or "/tmp/kgvault.jsonl")
        self._handler: logging.Handler | None = None

    def attach(self, formatter: logging.Formatter) -> logging.Handler:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._handler = logging.FileHandler(self._path, mode="a", encoding="utf-8")
        self._handler.setFormatter(formatter)
        return self._handler

    def close(self) -> None:
        if self._handler is not None:
            self._handler.close()
            self._handler = None


_FORMATTERS: dict[str, type] = {
    "structlog": StructlogFormatter,
    "stdlib": StdlibFormatter,
}

# Destination classes are constructed with the ObservabilityConfig.
_DESTINATIONS: dict[str, type] = {
    "stderr": StderrDestination,
    "jsonl": JsonlFileDestination,
}


def register_formatter(name: str, cls: type) -> None:
    _FORMATTERS[name] = cls


def register_destination(name: str, cls: type) -> None:
    _DESTINATIONS[name] = cls


_MANAGED_ATTR = "_kgvault_managed"

_active_formatter: LogFormatter | None = None
_active_destination: LogDestination | None = None


def _lookup(registry: dict[str, type], kind: str, name: str) -> type:
    try:
        return registry[name]
    except KeyError:
        raise ValueError(f"Unknown log {kind}: {name!r}. Available: {sorted(registry)}.") from None


def _detach_managed(root: logging.Logger) -> None:
    root.handlers = [h for h in root.handlers if not getattr(h, _MANAGED_ATTR, False)]


def setup_logging(config: ObservabilityConfig) -> None:
    """Compose formatter x destination and attach the handler to the root logger.

    Only the handler kgvault installed is replaced; handlers added by
    pytest caplog or monitoring agents are left alone.
    """
    global _active_formatter, _active_destination

    formatter = _lookup(_FORMATTERS, "formatter", config.log_formatter)()
    destination = _lookup(_DESTINATIONS, "destination", config.log_destination)(config)

    if _active_destination is not None:
        _active_destination.close()
    handler = destination.attach(formatter.setup(config))
    setattr(handler, _MANAGED_ATTR, True)

    root = logging.getLogger()
    _detach_managed(root)
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    _active_formatter = formatter
    _active_destination = destination


def get_logger(name: str = "", **kwargs: Any) -> Any:
    """Structured logger from the active formatter.

    Before setup_logging() runs this still returns a kwargs-friendly
    stdlib wrapper, so ``logger.info("event", key=value)`` never crashes.
    """
    if _active_formatter is None:
        return _KwargsLogger(logging.getLogger(name))
    return _active_formatter.get_logger(name, **kwargs)


def shutdown_logging() -> None:
    global _active_formatter, _active_destination
    if _active_destination is not None:
        _active_destination.close()
    _detach_managed(logging.getLogger())
    _active_formatter = None
    _active_destination = None
