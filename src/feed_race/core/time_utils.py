from __future__ import annotations

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def monotonic_ms() -> float:
    return time.perf_counter_ns() / 1_000_000
