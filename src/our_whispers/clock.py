"""Millisecond wall clock, injectable for tests."""

from __future__ import annotations

import time
from collections.abc import Callable

Clock = Callable[[], int]


def system_clock() -> int:
    """Current Unix time in milliseconds."""
    return time.time_ns() // 1_000_000
