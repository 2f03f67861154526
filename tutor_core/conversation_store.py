"""
RAM-only conversation store.

Contract:
- No disk writes.
- At most max_entries entries (oldest dropped first).
- Entries older than max_age_seconds are swept periodically.
- Every entry carries a snapshot of the ambient context at append time.
- Emotion samples update ambient context only; they never trigger speech.

Used to build the bounded context payload sent to the response service.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Deque, Dict, List, Optional

from tutor_core import policy
from tutor_core.activity_tracker import ActivityTracker

logger = logging.getLogger("TUTOR.Conversation")

USER = "user"
ASSISTANT = "assistant"
SYSTEM = "system"
EMOTION_CONTEXT = "emotion-context"
ENTRY_TYPES = (USER, ASSISTANT, SYSTEM, EMOTION_CONTEXT)


@dataclass(frozen=True)
class EmotionSample:
    """One reading from the emotion detector (consumed, never produced here)."""

    emotion: Optional[str]
    confidence: float = 0.0
    visual_description: Optional[str] = None
    face_detected: bool = True


@dataclass(frozen=True)
class EmotionContext:
    emotion: str
    confidence: float
    visual_description: Optional[str]
    face_detected: bool
    timestamp: float

    def to_request_dict(self) -> Dict[str, Any]:
        return {
            "emotion": self.emotion,
            "confidence": self.confidence,
            "visualDescription": self.visual_description,
            "faceDetected": self.face_detected,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class AmbientContext:
    emotion_context: Optional[EmotionContext] = None
    user_activity: str = "active"
    last_interaction_time: float = 0.0
    conversation_topic: Optional[str] = None
    user_mood: str = "neutral"


@dataclass(frozen=True)
class ConversationEntry:
    id: int
    type: str
    content: str
    timestamp: float
    context_snapshot: AmbientContext
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HistoryItem:
    type: str
    content: str
    timestamp: float


@dataclass
class ContextPayload:
    conversation_history: List[HistoryItem]
    emotion_context: Optional[EmotionContext]
    user_activity: str
    current_topic: Optional[str]
    user_mood: str
    activity_flags: Dict[str, bool]
    time_since_last_interaction: float
    is_user_active: bool

    def to_request_dict(self) -> Dict[str, Any]:
        """Wire form (camelCase keys, milliseconds for elapsed time)."""
        return {
            "conversationHistory": [
                {"type": h.type, "content": h.content, "timestamp": h.timestamp}
                for h in self.conversation_history
            ],
            "emotionContext": self.emotion_context.to_request_dict() if self.emotion_context else None,
            "userActivity": self.user_activity,
            "currentTopic": self.current_topic,
            "userMood": self.user_mood,
            "activityFlags": dict(self.activity_flags),
            "timeSinceLastInteraction": int(self.time_since_last_interaction * 1000),
            "isUserActive": self.is_user_active,
        }


class ConversationStore:
    """
    Bounded conversation log plus the rolling ambient context.

    Cleared on: restart, clear_history().
    """

    def __init__(
        self,
        max_entries: int = policy.CONVERSATION_MAX_ENTRIES,
        max_age_seconds: float = policy.CONVERSATION_MAX_AGE_SECONDS,
        sweep_interval_seconds: float = policy.CONVERSATION_SWEEP_INTERVAL_SECONDS,
        context_entries: int = policy.CONTEXT_HISTORY_ENTRIES,
        truncate_chars: int = policy.CONTEXT_TRUNCATE_CHARS,
        fresh_interaction_seconds: float = policy.FRESH_INTERACTION_SECONDS,
        emotion_confidence_threshold: float = policy.EMOTION_CONFIDENCE_THRESHOLD,
        activity: Optional[ActivityTracker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max(1, int(max_entries))
        self.max_age_seconds = max_age_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.context_entries = context_entries
        self.truncate_chars = truncate_chars
        self.fresh_interaction_seconds = fresh_interaction_seconds
        self.emotion_confidence_threshold = emotion_confidence_threshold
        self.activity = activity
        self._clock = clock
        self._entries: Deque[ConversationEntry] = deque(maxlen=self.max_entries)
        self._ambient = AmbientContext(last_interaction_time=clock())
        self._ids = itertools.count(1)
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config, activity: Optional[ActivityTracker] = None, **kwargs) -> "ConversationStore":
        return cls(
            max_entries=config.get_int("conversation.max_entries", policy.CONVERSATION_MAX_ENTRIES),
            max_age_seconds=config.get_float("conversation.max_age_seconds", policy.CONVERSATION_MAX_AGE_SECONDS),
            sweep_interval_seconds=config.get_float(
                "conversation.sweep_interval_seconds", policy.CONVERSATION_SWEEP_INTERVAL_SECONDS
            ),
            context_entries=config.get_int("conversation.context_entries", policy.CONTEXT_HISTORY_ENTRIES),
            truncate_chars=config.get_int("conversation.content_truncate_chars", policy.CONTEXT_TRUNCATE_CHARS),
            fresh_interaction_seconds=config.get_float(
                "conversation.fresh_interaction_seconds", policy.FRESH_INTERACTION_SECONDS
            ),
            emotion_confidence_threshold=config.get_float(
                "coordinator.emotion_confidence_threshold", policy.EMOTION_CONFIDENCE_THRESHOLD
            ),
            activity=activity,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Log
    # ------------------------------------------------------------------
    def append(self, entry_type: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> ConversationEntry:
        """Add an entry stamped with the current ambient context."""
        if entry_type not in ENTRY_TYPES:
            raise ValueError(f"Unknown conversation entry type: {entry_type!r}")
        now = self._clock()
        entry = ConversationEntry(
            id=next(self._ids),
            type=entry_type,
            content=content,
            timestamp=now,
            context_snapshot=self._ambient,
            metadata=dict(metadata or {}),
        )
        self._entries.append(entry)
        self._ambient = replace(self._ambient, last_interaction_time=now)
        logger.debug(f"[SESSION] {entry_type} appended ({len(self._entries)}/{self.max_entries})")
        return entry

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop entries older than max_age_seconds. Returns how many went."""
        now = self._clock() if now is None else now
        kept = [e for e in self._entries if now - e.timestamp < self.max_age_seconds]
        removed = len(self._entries) - len(kept)
        if removed:
            self._entries.clear()
            self._entries.extend(kept)
            logger.info(f"[SESSION] Swept {removed} stale entries")
        return removed

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever(), name="conversation-sweeper")

    def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()

    def clear_history(self) -> None:
        if self._entries:
            logger.info("[SESSION] Conversation history cleared")
        self._entries.clear()

    def entries(self) -> List[ConversationEntry]:
        return list(self._entries)

    def get_recent_history(self, count: int = 5) -> List[ConversationEntry]:
        if count <= 0:
            return []
        return list(self._entries)[-count:]

    def last_entry(self) -> Optional[ConversationEntry]:
        return self._entries[-1] if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Ambient context
    # ------------------------------------------------------------------
    def ambient(self) -> AmbientContext:
        return self._ambient

    def set_topic(self, topic: Optional[str]) -> None:
        self._ambient = replace(self._ambient, conversation_topic=topic)

    def time_since_last_interaction(self) -> float:
        return self._clock() - self._ambient.last_interaction_time

    def update_ambient_context(self, sample: Optional[EmotionSample]) -> None:
        """
        Merge an emotion sample into the ambient context.

        A change of dominant emotion at confidence above the threshold is
        logged as an emotion-context entry on the next loop turn.
        """
        if sample is None:
            return
        previous = self._ambient.emotion_context
        emotion = sample.emotion or "neutral"
        current = EmotionContext(
            emotion=emotion,
            confidence=sample.confidence or 0.0,
            visual_description=sample.visual_description,
            face_detected=sample.face_detected,
            timestamp=self._clock(),
        )
        self._ambient = replace(
            self._ambient,
            emotion_context=current,
            user_mood=sample.emotion or self._ambient.user_mood,
        )

        changed = previous is None or previous.emotion != current.emotion
        if not (changed and current.confidence > self.emotion_confidence_threshold):
            return
        args = (
            EMOTION_CONTEXT,
            f"User's emotional state changed to {current.emotion}",
            {"confidence": current.confidence, "visual_description": current.visual_description},
        )
        try:
            asyncio.get_running_loop().call_soon(self.append, *args)
        except RuntimeError:
            self.append(*args)

    # ------------------------------------------------------------------
    # Payload
    # ------------------------------------------------------------------
    def build_context_payload(self) -> ContextPayload:
        recent = list(self._entries)[-self.context_entries:] if self.context_entries > 0 else []
        history = [
            HistoryItem(type=e.type, content=self._truncate(e.content), timestamp=e.timestamp)
            for e in recent
        ]
        elapsed = self.time_since_last_interaction()
        return ContextPayload(
            conversation_history=history,
            emotion_context=self._ambient.emotion_context,
            user_activity=self._ambient.user_activity,
            current_topic=self._ambient.conversation_topic,
            user_mood=self._ambient.user_mood,
            activity_flags=self.activity.flags() if self.activity is not None else {},
            time_since_last_interaction=elapsed,
            is_user_active=elapsed < self.fresh_interaction_seconds,
        )

    def _truncate(self, content: str) -> str:
        if len(content) > self.truncate_chars:
            return content[: self.truncate_chars] + "..."
        return content
