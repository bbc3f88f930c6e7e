from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], str]


def now_iso() -> str:
    """UTC timestamp, millisecond precision, e.g. 2026-01-02T03:04:05.678Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_ms() -> int:
    return int(time.time() * 1000)
