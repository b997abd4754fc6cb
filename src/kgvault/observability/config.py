"""Observability configuration, env-var driven.

Zero config required: structured JSON logs to stderr.

    Formatter:   KGVAULT_LOG_FORMATTER=structlog (default) | stdlib
    Destination: KGVAULT_LOG_DESTINATION=stderr (default) | jsonl
    Renderer:    KGVAULT_LOG_FORMAT=json (default) | console
    Level:       KGVAULT_LOG_LEVEL=INFO
    JSONL path:  KGVAULT_LOG_PATH
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass
class ObservabilityConfig:
    log_formatter: str = field(
        default_factory=lambda: os.environ.get("KGVAULT_LOG_FORMATTER", "structlog")
    )
    log_destination: str = field(
        default_factory=lambda: os.environ.get("KGVAULT_LOG_DESTINATION", "stderr")
    )
    log_level: str = field(default_factory=lambda: os.environ.get("KGVAULT_LOG_LEVEL", "INFO"))
    log_format: str = field(default_factory=lambda: os.environ.get("KGVAULT_LOG_FORMAT", "json"))
    jsonl_path: str | None = field(default_factory=lambda: os.environ.get("KGVAULT_LOG_PATH"))
