"""
SpeechChannel: bookkeeping for the single logical audio output.

Every producer (avatar, chat, lesson narrator, knowledge check, ...) registers
while it is producing audio and unregisters when it stops. The first
registered source is the elected "active source"; its completion is what
drains the pending response queue.

This pattern ensures:
- A source is tracked at most once
- active_source is always None or a member of active_sources
- Unregister of an unknown source is a no-op (safe on error paths)

No queueing and no preemption live here. Admission is the coordinator's job.

Usage:
    channel = SpeechChannel()

    channel.register("avatar")
    try:
        play()
    finally:
        channel.unregister("avatar")
"""

import threading
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from tutor_core.instrumentation import log_event

logger = logging.getLogger("TUTOR.SpeechChannel")


@dataclass(frozen=True)
class SpeechChannelState:
    active_sources: Tuple[str, ...]
    active_source: Optional[str]

    @property
    def is_any_speaking(self) -> bool:
        return bool(self.active_sources)


class SpeechChannel:
    """Ordered set of currently speaking sources with an elected driver."""

    def __init__(self):
        self._lock = threading.RLock()
        # dict keys keep arrival order and give O(1) membership
        self._sources: Dict[str, None] = {}

    def register(self, source_id: str) -> bool:
        """
        Mark source_id as producing audio.

        Returns:
            True if the source was added, False if it was already registered
        """
        with self._lock:
            if source_id in self._sources:
                logger.debug(f"[CHANNEL] {source_id} already registered")
                return False
            self._sources[source_id] = None
            elected = self._first()
        logger.info(f"[CHANNEL] register {source_id} (active={elected}, count={len(self._sources)})")
        log_event("CHANNEL_REGISTER", stage="channel", source=source_id)
        return True

    def unregister(self, source_id: str) -> bool:
        """
        Remove source_id; active source becomes the next in arrival order.

        Returns:
            True if the source was removed, False if it was not registered
        """
        with self._lock:
            if source_id not in self._sources:
                return False
            del self._sources[source_id]
            elected = self._first()
        logger.info(f"[CHANNEL] unregister {source_id} (active={elected}, count={len(self._sources)})")
        log_event("CHANNEL_UNREGISTER", stage="channel", source=source_id)
        return True

    def _first(self) -> Optional[str]:
        return next(iter(self._sources), None)

    def is_any_speaking(self) -> bool:
        with self._lock:
            return bool(self._sources)

    def active_source(self) -> Optional[str]:
        with self._lock:
            return self._first()

    def active_sources(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._sources)

    def is_registered(self, source_id: str) -> bool:
        with self._lock:
            return source_id in self._sources

    def snapshot(self) -> SpeechChannelState:
        with self._lock:
            return SpeechChannelState(active_sources=tuple(self._sources), active_source=self._first())
