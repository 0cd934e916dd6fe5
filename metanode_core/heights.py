"""
Monotonic height sources.

The ledger measures time in heights.  ``ManualHeightSource`` is driven
explicitly (tests, simulations, replay); ``ClockHeightSource`` derives the
height from wall-clock time since a genesis timestamp.
"""

from __future__ import annotations

import threading
import time
from typing import Optional


class HeightSource:
    """Interface: ``current_height() -> int``, never decreasing."""

    def current_height(self) -> int:
        raise NotImplementedError

    def resume_from(self, height: int) -> None:
        """Never report a height below *height* from now on (state restore)."""
        raise NotImplementedError


class ManualHeightSource(HeightSource):

    def __init__(self, height: int = 0) -> None:
        if height < 0:
            raise ValueError("height must be non-negative")
        self._height = height
        self._lock = threading.Lock()

    def current_height(self) -> int:
        return self._height

    def advance(self, n: int = 1) -> int:
        if n < 0:
            raise ValueError("height cannot move backwards")
        with self._lock:
            self._height += n
            return self._height

    def set(self, height: int) -> int:
        with self._lock:
            if height < self._height:
                raise ValueError(
                    f"height cannot move backwards: {self._height} -> {height}"
                )
            self._height = height
            return self._height

    def resume_from(self, height: int) -> None:
        with self._lock:
            self._height = max(self._height, height)


class ClockHeightSource(HeightSource):
    """``height = floor((now - genesis_time) / interval_seconds)``."""

    def __init__(
        self,
        interval_seconds: float = 12.0,
        genesis_time: Optional[float] = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self.genesis_time = time.time() if genesis_time is None else genesis_time
        self._last = 0

    def current_height(self, now: Optional[float] = None) -> int:
        if now is None:
            now = time.time()
        height = max(0, int((now - self.genesis_time) // self.interval_seconds))
        # Clock adjustments must never rewind the ledger.
        self._last = max(self._last, height)
        return self._last

    def resume_from(self, height: int) -> None:
        self._last = max(self._last, height)
