"""
ActivityTracker: is the learner still here?

Raw input (pointer, key, scroll, touch) calls record_activity(). Each call
re-arms a single-shot idle timer; when it fires the learner is considered
idle until the next tracked activity.

Context flags (isInLesson, isInChat, ...) are plain named booleans. Setting
one never touches the idle timer.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from tutor_core.policy import IDLE_THRESHOLD_SECONDS

logger = logging.getLogger("TUTOR.Activity")

IN_LESSON = "isInLesson"
IN_CHAT = "isInChat"


@dataclass
class UserActivityState:
    last_activity_time: float
    is_user_active: bool = True
    flags: Dict[str, bool] = field(default_factory=lambda: {IN_LESSON: False, IN_CHAT: False})


class ActivityTracker:
    """Tracks last activity time and a decaying idle flag."""

    def __init__(
        self,
        idle_threshold: float = IDLE_THRESHOLD_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_threshold = idle_threshold
        self._clock = clock
        self._state = UserActivityState(last_activity_time=clock())
        self._idle_timer: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------
    def record_activity(self) -> None:
        self._state.last_activity_time = self._clock()
        if not self._state.is_user_active:
            logger.debug("[ACTIVITY] User active again")
        self._state.is_user_active = True
        self._arm_idle_timer()

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet (startup / sync callers); activity is still recorded
            return
        self._idle_timer = loop.call_later(self.idle_threshold, self._on_idle_timeout)

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _on_idle_timeout(self) -> None:
        self._idle_timer = None
        self._state.is_user_active = False
        logger.info(f"[ACTIVITY] User idle after {self.idle_threshold:.0f}s")

    # ------------------------------------------------------------------
    # Context flags
    # ------------------------------------------------------------------
    def set_context_flag(self, name: str, value: bool) -> None:
        self._state.flags[name] = bool(value)

    def get_context_flag(self, name: str) -> bool:
        return self._state.flags.get(name, False)

    def flags(self) -> Dict[str, bool]:
        return dict(self._state.flags)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @property
    def is_user_active(self) -> bool:
        return self._state.is_user_active

    @property
    def last_activity_time(self) -> float:
        return self._state.last_activity_time

    def time_since_activity(self) -> float:
        return self._clock() - self._state.last_activity_time

    def has_pending_timer(self) -> bool:
        return self._idle_timer is not None

    def close(self) -> None:
        self._cancel_idle_timer()
