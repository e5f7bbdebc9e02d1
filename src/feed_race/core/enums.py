from __future__ import annotations

from enum import StrEnum


class SourceStatus(StrEnum):
    PROBING = "probing"
    ACTIVE = "active"
    INACTIVE = "inactive"


class RunPhase(StrEnum):
    WARMUP = "warmup"
    LIVE = "live"
    FINISHED = "finished"


class RunStatus(StrEnum):
    RANKED = "ranked"
    INSUFFICIENT_DATA = "insufficient_data"
    NO_SOURCES = "no_sources"


class OutputFormat(StrEnum):
    TABLE = "table"
    JSON = "json"
    CSV = "csv"
