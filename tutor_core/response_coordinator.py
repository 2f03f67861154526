"""
RESPONSE COORDINATOR

Decides whether a candidate tutor response may speak now, later, or never,
then generates it and hands it to the SpeechEngine.

Flow: IDLE → PROCESSING → (SUCCESS | FALLBACK) → IDLE

Allowed Transitions (ONLY THESE):
- IDLE → PROCESSING         (admitted request starts generating)
- PROCESSING → SUCCESS      (service replied with text)
- PROCESSING → FALLBACK     (service failed; fallback line substituted)
- PROCESSING → IDLE         (generation aborted by cancellation)
- SUCCESS | FALLBACK → IDLE (turn recorded)

Admission (unless forced):
- Speech already active and priority is not "high" → denied (None)
- "emotion-aware" within 15s of the last admitted one → denied
- "idle" within 300s of the last admitted one → denied
- Admitted while another generation is running → queued (None)

Queued requests are drained one at a time, oldest first, from the on_end of
an utterance the coordinator spoke as the elected (first registered) source.
Ending as a secondary, overlapping speaker leaves the queue untouched. Each
drained request is resubmitted after a short delay with priority "low" and no
force, so it goes through admission again.

Generation never raises: service failures become the fallback line, which is
recorded as an assistant turn and spoken like any other reply.
"""

# ============================================================================
# 1) IMPORTS
# ============================================================================
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from tutor_core import policy
from tutor_core.activity_tracker import IN_CHAT, IN_LESSON
from tutor_core.conversation_store import (
    ASSISTANT,
    SYSTEM,
    USER,
    ConversationStore,
    EmotionSample,
)
from tutor_core.errors import ResponseServiceError
from tutor_core.instrumentation import log_event
from tutor_core.pending_queue import PendingQueue, PendingResponseRequest
from tutor_core.response_client import AVATAR_RESPONSE, CHAT, TUTORING, GeneratedResponse, ResponseClient
from tutor_core.session_context import SessionContext
from tutor_core.speech_engine import SpeechEngine

logger = logging.getLogger("TUTOR.Coordinator")

UserInfo = Optional[Dict[str, Any]]

# Response types
RESPONSE_CHAT = "chat"
RESPONSE_IDLE = "idle"
RESPONSE_EMOTION = "emotion-aware"
RESPONSE_GREETING = "greeting"
RESPONSE_LESSON = "lesson-narration"
RESPONSE_ENCOURAGEMENT = "encouragement"
RESPONSE_FALLBACK = "fallback"

PRIORITY_HIGH = "high"
PRIORITY_NORMAL = "normal"
PRIORITY_LOW = "low"


# ============================================================================
# 2) STATE
# ============================================================================
class CoordinatorState(Enum):
    IDLE = "IDLE"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FALLBACK = "FALLBACK"


_TRANSITIONS = {
    CoordinatorState.IDLE: {CoordinatorState.PROCESSING},
    CoordinatorState.PROCESSING: {CoordinatorState.SUCCESS, CoordinatorState.FALLBACK, CoordinatorState.IDLE},
    CoordinatorState.SUCCESS: {CoordinatorState.IDLE},
    CoordinatorState.FALLBACK: {CoordinatorState.IDLE},
}


@dataclass
class CoordinatedResponse:
    """A reply that was generated and handed to the speech engine."""

    text: str
    type: str
    response_type: str
    utterance: asyncio.Task


# ============================================================================
# 3) COORDINATOR
# ============================================================================
class ResponseCoordinator:
    def __init__(
        self,
        session: SessionContext,
        engine: SpeechEngine,
        client: ResponseClient,
        store: Optional[ConversationStore] = None,
        source_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = session.config
        self.session = session
        self.engine = engine
        self.client = client
        self.store = store or ConversationStore.from_config(config, activity=session.activity, clock=clock)
        self.source_id = source_id or config.get("speech.coordinator_source", policy.CONVERSATION_SOURCE)
        self.queue = PendingQueue()
        self._clock = clock

        self.emotion_rate_limit = config.get_float(
            "coordinator.emotion_rate_limit_seconds", policy.EMOTION_RATE_LIMIT_SECONDS
        )
        self.idle_rate_limit = config.get_float("coordinator.idle_rate_limit_seconds", policy.IDLE_RATE_LIMIT_SECONDS)
        self.drain_delay = config.get_float("coordinator.queue_drain_delay_seconds", policy.QUEUE_DRAIN_DELAY_SECONDS)
        self.chat_reset_delay = config.get_float(
            "coordinator.chat_context_reset_seconds", policy.CHAT_CONTEXT_RESET_SECONDS
        )
        self.emotion_confidence_threshold = config.get_float(
            "coordinator.emotion_confidence_threshold", policy.EMOTION_CONFIDENCE_THRESHOLD
        )
        self.emotion_recency = config.get_float("coordinator.emotion_recency_seconds", policy.EMOTION_RECENCY_SECONDS)

        # Rate clocks: None until the first admitted response of that kind
        self.last_emotion_response_time: Optional[float] = None
        self.last_idle_response_time: Optional[float] = None

        self._state = CoordinatorState.IDLE
        self._greeted = False
        self._chat_reset: Optional[asyncio.TimerHandle] = None
        self._drain_handles: Set[asyncio.TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._state is not CoordinatorState.IDLE

    @property
    def has_greeted(self) -> bool:
        return self._greeted

    def pending_count(self) -> int:
        return len(self.queue)

    def _transition(self, new_state: CoordinatorState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            error_msg = f"Invalid transition: {self._state.value} → {new_state.value}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)
        logger.debug(f"[COORD] {self._state.value} -> {new_state.value}")
        self._state = new_state

    # ------------------------------------------------------------------
    # Admission + generation
    # ------------------------------------------------------------------
    async def generate_coordinated_response(
        self,
        input: str,
        response_type: str,
        user_info: UserInfo = None,
        force: bool = False,
        priority: str = PRIORITY_NORMAL,
    ) -> Optional[CoordinatedResponse]:
        """
        Admit, generate and speak one response.

        Returns:
            CoordinatedResponse, or None when denied or queued
        """
        if not force and not self._admit(response_type, priority):
            return None

        if self.is_processing:
            self.queue.push(PendingResponseRequest(input, response_type, user_info, self._clock()))
            log_event("QUEUED", stage="admission", source=response_type)
            return None

        reply = await self._generate(input, response_type, user_info)

        now = self._clock()
        if response_type == RESPONSE_EMOTION:
            self.last_emotion_response_time = now
        elif response_type == RESPONSE_IDLE:
            self.last_idle_response_time = now

        # None until playback starts; then whether this source was the elected driver
        elected: Dict[str, Optional[bool]] = {"value": None}

        def on_start():
            elected["value"] = self.session.channel.active_source() == self.source_id

        utterance = self.engine.speak(
            self.source_id,
            reply.text,
            on_start=on_start,
            on_end=lambda: self._on_utterance_end(elected["value"]),
        )
        return CoordinatedResponse(text=reply.text, type=reply.type, response_type=response_type, utterance=utterance)

    def _admit(self, response_type: str, priority: str) -> bool:
        if self.session.channel.is_any_speaking() and priority != PRIORITY_HIGH:
            logger.info(f"[ADMISSION] {response_type} denied: speech already active")
            return False
        now = self._clock()
        if response_type == RESPONSE_EMOTION and self._within(self.last_emotion_response_time, self.emotion_rate_limit, now):
            logger.info(f"[ADMISSION] {response_type} denied: too frequent")
            return False
        if response_type == RESPONSE_IDLE and self._within(self.last_idle_response_time, self.idle_rate_limit, now):
            logger.info(f"[ADMISSION] {response_type} denied: too frequent")
            return False
        return True

    @staticmethod
    def _within(last: Optional[float], window: float, now: float) -> bool:
        return last is not None and now - last < window

    async def _generate(self, input: str, response_type: str, user_info: UserInfo) -> GeneratedResponse:
        self._transition(CoordinatorState.PROCESSING)
        try:
            context = self.store.build_context_payload()
            is_chat = response_type == RESPONSE_CHAT
            prompt = input
            if is_chat and context.emotion_context is not None:
                visual = context.emotion_context.visual_description or "engaged"
                prompt = f"{input}\n\n[VISUAL CONTEXT: User appears {context.user_mood}, {visual}]"

            try:
                reply = await self.client.generate(
                    prompt,
                    user_info,
                    context,
                    request_type=self._request_type(response_type),
                    trigger=None if is_chat else response_type,
                )
                if not reply or not reply.text or not reply.text.strip():
                    raise ResponseServiceError("Response service returned empty response")
            except Exception as e:
                logger.error(f"[LLM] {response_type} generation failed: {type(e).__name__}: {e}")
                self.store.append(
                    ASSISTANT,
                    policy.FALLBACK_RESPONSE,
                    {"response_type": RESPONSE_FALLBACK, "error": str(e)},
                )
                self._transition(CoordinatorState.FALLBACK)
                log_event("FALLBACK", stage="generation", source=response_type)
                return GeneratedResponse(text=policy.FALLBACK_RESPONSE, type=RESPONSE_FALLBACK)

            if is_chat:
                self.store.append(USER, input)
            else:
                self.store.append(SYSTEM, input, {"trigger": response_type})
            self.store.append(ASSISTANT, reply.text, {"response_type": response_type})
            self._transition(CoordinatorState.SUCCESS)
            return reply
        finally:
            self._transition(CoordinatorState.IDLE)

    @staticmethod
    def _request_type(response_type: str) -> str:
        if response_type == RESPONSE_CHAT:
            return CHAT
        if response_type == RESPONSE_LESSON:
            return TUTORING
        return AVATAR_RESPONSE

    # ------------------------------------------------------------------
    # Queue drain
    # ------------------------------------------------------------------
    def _on_utterance_end(self, elected: Optional[bool] = None) -> None:
        """
        Drain one queued request, but only as the elected speaker.

        elected is None when the utterance never reached playback; it then
        counts as elected only if nobody else holds the channel.
        """
        if not self.queue:
            return
        if elected is None:
            elected = not self.session.channel.is_any_speaking()
        if not elected:
            logger.info(
                f"[QUEUE] {self.source_id} ended as a secondary speaker, "
                f"{len(self.queue)} request(s) left queued"
            )
            return
        request = self.queue.pop()
        if request is None:
            return
        loop = asyncio.get_running_loop()
        handle = None

        def resubmit():
            self._drain_handles.discard(handle)
            logger.info(f"[QUEUE] resubmitting {request.response_type}")
            task = loop.create_task(
                self.generate_coordinated_response(
                    request.input,
                    request.response_type,
                    request.user_info,
                    force=False,
                    priority=PRIORITY_LOW,
                )
            )
            self._tasks.add(task)
            task.add_done_callback(self._drain_done)

        handle = loop.call_later(self.drain_delay, resubmit)
        self._drain_handles.add(handle)

    def _drain_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[QUEUE] resubmitted request failed: {type(error).__name__}: {error}")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------
    async def handle_user_chat(self, message: str, user_info: UserInfo = None) -> Optional[CoordinatedResponse]:
        activity = self.session.activity
        activity.set_context_flag(IN_CHAT, True)
        activity.record_activity()
        try:
            return await self.generate_coordinated_response(message, RESPONSE_CHAT, user_info, priority=PRIORITY_HIGH)
        finally:
            if self._chat_reset is not None:
                self._chat_reset.cancel()
            self._chat_reset = asyncio.get_running_loop().call_later(
                self.chat_reset_delay, activity.set_context_flag, IN_CHAT, False
            )

    async def handle_idle_check(self, user_info: UserInfo = None) -> Optional[CoordinatedResponse]:
        if not self.session.can_avatar_be_idle():
            return None

        ambient = self.store.ambient()
        last = self.store.last_entry()
        prompt = policy.IDLE_PROMPT_DEFAULT
        if last is not None and last.type == USER:
            prompt = policy.IDLE_PROMPT_AFTER_USER
        emotion = ambient.emotion_context
        if emotion is not None and emotion.emotion and emotion.emotion != "neutral":
            prompt = policy.IDLE_PROMPT_EMOTION.format(mood=ambient.user_mood)

        return await self.generate_coordinated_response(prompt, RESPONSE_IDLE, user_info)

    async def handle_emotion_aware_response(self, user_info: UserInfo = None) -> Optional[CoordinatedResponse]:
        emotion = self.store.ambient().emotion_context
        if emotion is None or emotion.confidence <= self.emotion_confidence_threshold:
            return None
        # Only during conversation; a long-idle learner gets the idle path instead
        if self.store.time_since_last_interaction() > self.emotion_recency:
            return None

        prompt = f"I can see you're feeling {emotion.emotion}. {emotion.visual_description or ''}".strip()
        return await self.generate_coordinated_response(prompt, RESPONSE_EMOTION, user_info)

    async def handle_greeting(self, user_info: UserInfo = None) -> Optional[CoordinatedResponse]:
        """
        One greeting per coordinator lifetime.

        Skipped (latch untouched) while something is generating or speaking.
        Resolves once the greeting has finished speaking.
        """
        if self._greeted:
            return None
        if self.is_processing or self.session.channel.is_any_speaking():
            logger.info("[GREETING] deferred: busy")
            return None
        self._greeted = True
        log_event("GREETING", stage="admission", source=self.source_id)

        result = await self.generate_coordinated_response(policy.GREETING_PROMPT, RESPONSE_GREETING, user_info, force=True)
        if result is not None:
            await result.utterance
        return result

    async def handle_lesson_narration(
        self,
        user_info: UserInfo,
        lesson_context: Dict[str, Any],
        trigger: str = "welcome",
    ) -> Optional[CoordinatedResponse]:
        """Narrate a lesson moment. The learner counts as in-lesson until it has been spoken."""
        activity = self.session.activity
        previous = activity.get_context_flag(IN_LESSON)
        activity.set_context_flag(IN_LESSON, True)
        title = lesson_context.get("title")
        if title:
            self.store.set_topic(title)
        try:
            result = await self.generate_coordinated_response(
                lesson_prompt(lesson_context, trigger), RESPONSE_LESSON, user_info
            )
            if result is not None:
                await result.utterance
            return result
        finally:
            activity.set_context_flag(IN_LESSON, previous)

    def update_emotion_context(self, sample: Optional[EmotionSample]) -> None:
        self.store.update_ambient_context(sample)

    # ------------------------------------------------------------------
    # Passthroughs
    # ------------------------------------------------------------------
    def get_recent_history(self, count: int = 5):
        return self.store.get_recent_history(count)

    def clear_history(self) -> None:
        self.store.clear_history()

    def build_context_payload(self):
        return self.store.build_context_payload()

    def close(self) -> None:
        for handle in list(self._drain_handles):
            handle.cancel()
        self._drain_handles.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._chat_reset is not None:
            self._chat_reset.cancel()
            self._chat_reset = None
        self.queue.clear()
        self.engine.cancel(self.source_id)
        self.store.stop_sweeper()


def lesson_prompt(lesson_context: Dict[str, Any], trigger: str) -> str:
    title = lesson_context.get("title") or "this lesson"
    parts = [f"Narrate the {trigger} moment of the lesson \"{title}\"."]
    block = lesson_context.get("content") or lesson_context.get("block")
    if block:
        parts.append(f"Current content: {block}")
    objective = lesson_context.get("objective")
    if objective:
        parts.append(f"Learning objective: {objective}")
    return " ".join(parts)
