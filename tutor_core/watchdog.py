"""
Watchdog Utility

Times a generation or synthesis block and flags it when it overran its budget.
Never cancels anything: the caller decides what an overrun means.

Usage:
    async with Watchdog("generation", LLM_WATCHDOG_SECONDS, source="chat") as wd:
        reply = await client.generate(...)
    if wd.triggered:
        ...
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from tutor_core.instrumentation import log_event

logger = logging.getLogger("TUTOR.Watchdog")


@dataclass(frozen=True)
class WatchdogResult:
    block: str
    source: str
    elapsed_seconds: float
    threshold_seconds: Optional[float]
    triggered: bool


class Watchdog:
    """Sync/async context manager measuring elapsed monotonic time for a block."""

    def __init__(
        self,
        block: str,
        threshold_seconds: Optional[float],
        source: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.block = block
        self.source = source
        self.threshold_seconds = threshold_seconds
        self._clock = clock
        self._start = 0.0
        self.elapsed_seconds = 0.0
        self.triggered = False

    def _begin(self):
        self._start = self._clock()
        self.triggered = False
        return self

    def _finish(self) -> None:
        self.elapsed_seconds = self._clock() - self._start
        if self.threshold_seconds is None or self.elapsed_seconds <= self.threshold_seconds:
            return
        self.triggered = True
        logger.warning(
            "[WATCHDOG] %s (%s) exceeded threshold: %.2fs > %.2fs",
            self.block,
            self.source or "-",
            self.elapsed_seconds,
            self.threshold_seconds,
        )
        log_event("WATCHDOG", stage=self.block, source=self.source)

    def __enter__(self):
        return self._begin()

    def __exit__(self, exc_type, exc, tb):
        self._finish()
        return False

    async def __aenter__(self):
        return self._begin()

    async def __aexit__(self, exc_type, exc, tb):
        self._finish()
        return False

    def result(self) -> WatchdogResult:
        return WatchdogResult(
            block=self.block,
            source=self.source,
            elapsed_seconds=self.elapsed_seconds,
            threshold_seconds=self.threshold_seconds,
            triggered=self.triggered,
        )
