"""
SessionContext: the one object that owns the shared coordination state.

Holds the SpeechChannel, the ActivityTracker and the AvatarSettings for one
tutoring session. The application root builds it once and hands it to every
consumer (speech engine, coordinator, UI glue). Tests build a fresh one each.

Consumers that cannot take it as an argument read it through use_session(),
which fails fast outside a session_scope() block.
"""

import contextlib
import contextvars
import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from tutor_core.activity_tracker import ActivityTracker, IN_CHAT, IN_LESSON
from tutor_core.config import Config, default_config
from tutor_core.errors import SessionScopeError
from tutor_core.speech_channel import SpeechChannel

logger = logging.getLogger("TUTOR.Session")


@dataclass
class AvatarSettings:
    is_muted: bool = False
    idle_responses_enabled: bool = True


class SessionContext:
    """Shared channel + activity + avatar settings for one session."""

    def __init__(
        self,
        config: Optional[Config] = None,
        channel: Optional[SpeechChannel] = None,
        activity: Optional[ActivityTracker] = None,
        avatar_settings: Optional[AvatarSettings] = None,
    ):
        self.config = config or default_config()
        self.channel = channel or SpeechChannel()
        self.activity = activity or ActivityTracker(
            idle_threshold=self.config.get_float("activity.idle_threshold_seconds", 60.0)
        )
        self.avatar_settings = avatar_settings or AvatarSettings()

    # ------------------------------------------------------------------
    # User toggles
    # ------------------------------------------------------------------
    def toggle_avatar_mute(self) -> bool:
        self.avatar_settings.is_muted = not self.avatar_settings.is_muted
        logger.info(f"[SESSION] Avatar muted={self.avatar_settings.is_muted}")
        return self.avatar_settings.is_muted

    def toggle_idle_responses(self) -> bool:
        self.avatar_settings.idle_responses_enabled = not self.avatar_settings.idle_responses_enabled
        logger.info(f"[SESSION] Idle responses enabled={self.avatar_settings.idle_responses_enabled}")
        return self.avatar_settings.idle_responses_enabled

    # ------------------------------------------------------------------
    # Idle eligibility
    # ------------------------------------------------------------------
    def can_avatar_be_idle(self) -> bool:
        """True when an unprompted idle remark would not bother anyone."""
        settings = self.avatar_settings
        activity = self.activity
        return (
            not settings.is_muted
            and settings.idle_responses_enabled
            and not self.channel.is_any_speaking()
            and not activity.is_user_active
            and not activity.get_context_flag(IN_LESSON)
            and not activity.get_context_flag(IN_CHAT)
            and activity.time_since_activity() > activity.idle_threshold
        )

    def close(self) -> None:
        self.activity.close()


# ============================================================================
# SESSION SCOPE
# ============================================================================
_current_session: contextvars.ContextVar[Optional[SessionContext]] = contextvars.ContextVar(
    "tutor_session", default=None
)


@contextlib.contextmanager
def session_scope(session: SessionContext) -> Iterator[SessionContext]:
    """Install session as the current one for the enclosed block."""
    token = _current_session.set(session)
    try:
        yield session
    finally:
        _current_session.reset(token)


def use_session() -> SessionContext:
    """Current session. Raises SessionScopeError outside session_scope()."""
    session = _current_session.get()
    if session is None:
        raise SessionScopeError("use_session() must be called within a session_scope()")
    return session
