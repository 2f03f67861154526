"""
SpeechEngine: turn text into audio on the shared channel.

Contract:
- speak() returns an asyncio Task (the utterance handle) resolving to a
  SpeechOutcome. It never raises for synthesis or playback problems.
- on_end fires exactly once per utterance unless the utterance was cancelled.
  It is never called synchronously from inside speak().
- The source is registered on the SpeechChannel only once a backend has a
  clip ready, and unregistered on every exit path.
- cancel() is synchronous: playback stops, the source is unregistered and
  on_end is NOT fired.

Backends are tried in order (see synthesis.py). A backend that fails to
produce a clip hands over to the next; the primary is bounded by its timeout.

Usage:
    engine = SpeechEngine(session)
    handle = engine.speak("avatar", "Hello there!", on_end=drain)
    outcome = await handle
"""

# ============================================================================
# 1) IMPORTS
# ============================================================================
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from tutor_core.instrumentation import log_event, log_latency
from tutor_core.policy import AVATAR_SOURCE, TTS_WATCHDOG_SECONDS
from tutor_core.session_context import SessionContext
from tutor_core.synthesis import (
    SynthesisBackend,
    SynthesisResult,
    SynthesisStatus,
    build_default_backends,
    sanitize_for_speech,
)
from tutor_core.watchdog import Watchdog

logger = logging.getLogger("TUTOR.SpeechEngine")

Callback = Optional[Callable[[], None]]


# ============================================================================
# 2) OUTCOMES
# ============================================================================
class SpeechOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass
class _Utterance:
    source_id: str
    text: str
    on_start: Callback
    on_end: Callback
    task: Optional[asyncio.Task] = None
    backend: Optional[SynthesisBackend] = None
    started: bool = False
    cancelled: bool = False
    ended: bool = False


# ============================================================================
# 3) ENGINE
# ============================================================================
class SpeechEngine:
    """Ordered synthesis fallback with channel bookkeeping and cancellation."""

    def __init__(
        self,
        session: SessionContext,
        backends: Optional[List[SynthesisBackend]] = None,
        avatar_source: Optional[str] = None,
    ):
        self.session = session
        self.channel = session.channel
        self.backends = list(backends) if backends is not None else build_default_backends(session.config)
        self.avatar_source = avatar_source or session.config.get("speech.avatar_source", AVATAR_SOURCE)
        self._in_flight: Dict[str, _Utterance] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def speak(
        self,
        source_id: str,
        text: str,
        on_start: Callback = None,
        on_end: Callback = None,
        force: bool = False,
    ) -> asyncio.Task:
        """
        Speak text as source_id. Must be called from the event loop thread.

        Args:
            source_id: Who is speaking (only the avatar source honours mute)
            text: Text to speak; trimmed and stripped of markup
            on_start: Called once audio begins
            on_end: Called once audio ends, fails or is skipped
            force: Speak even when the avatar is muted

        Returns:
            asyncio.Task resolving to a SpeechOutcome
        """
        loop = asyncio.get_running_loop()
        cleaned = sanitize_for_speech(text or "")

        if not cleaned:
            logger.debug(f"[TTS] {source_id}: empty text, skipping")
            return self._skip(loop, source_id, on_end)

        if source_id == self.avatar_source and self.session.avatar_settings.is_muted and not force:
            logger.info(f"[TTS] {source_id}: avatar muted, skipping")
            return self._skip(loop, source_id, on_end)

        if source_id in self._in_flight:
            logger.info(f"[TTS] {source_id}: superseding utterance in flight")
            self.cancel(source_id)

        utterance = _Utterance(source_id=source_id, text=cleaned, on_start=on_start, on_end=on_end)
        utterance.task = loop.create_task(self._run(utterance), name=f"speech:{source_id}")
        self._in_flight[source_id] = utterance
        log_event("SPEAK_REQUEST", stage="tts", source=source_id)
        return utterance.task

    def cancel(self, source_id: str) -> bool:
        """
        Stop source_id immediately. No-op when nothing is in flight.

        Returns:
            True if an utterance was cancelled
        """
        utterance = self._in_flight.pop(source_id, None)
        if utterance is None:
            return False
        utterance.cancelled = True
        if utterance.backend is not None:
            utterance.backend.stop()
        # A task that has not run yet sees the flag at entry and resolves CANCELLED
        if utterance.task is not None and utterance.started:
            utterance.task.cancel()
        self.channel.unregister(source_id)
        logger.info(f"[TTS] {source_id}: cancelled")
        log_event("SPEAK_CANCEL", stage="tts", source=source_id)
        return True

    def is_speaking(self, source_id: str) -> bool:
        return source_id in self._in_flight

    def close(self) -> None:
        for source_id in list(self._in_flight):
            self.cancel(source_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _skip(self, loop: asyncio.AbstractEventLoop, source_id: str, on_end: Callback) -> asyncio.Task:
        if on_end is not None:
            loop.call_soon(self._invoke, on_end, source_id, "on_end")
        log_event("SPEAK_SKIPPED", stage="tts", source=source_id)
        return loop.create_task(self._resolved(SpeechOutcome.SKIPPED), name=f"speech:{source_id}:skipped")

    @staticmethod
    async def _resolved(outcome: SpeechOutcome) -> SpeechOutcome:
        return outcome

    async def _run(self, utterance: _Utterance) -> SpeechOutcome:
        source_id = utterance.source_id
        registered = False
        outcome = SpeechOutcome.FAILED
        utterance.started = True
        try:
            if utterance.cancelled:
                outcome = SpeechOutcome.CANCELLED
                return outcome
            backend, result = await self._first_ready(utterance)
            if result is None:
                logger.error(f"[TTS] {source_id}: no backend could synthesize")
                return outcome

            utterance.backend = backend
            self.channel.register(source_id)
            registered = True
            self._invoke(utterance.on_start, source_id, "on_start")
            log_event("SPEAK_START", stage="tts", source=source_id)

            await backend.play(result.clip)
            outcome = SpeechOutcome.COMPLETED
            return outcome
        except asyncio.CancelledError:
            if not utterance.cancelled:
                raise
            outcome = SpeechOutcome.CANCELLED
            return outcome
        except Exception as e:
            logger.error(f"[TTS] {source_id}: playback failed: {type(e).__name__}: {e}")
            return outcome
        finally:
            if registered and not utterance.cancelled:
                self.channel.unregister(source_id)
            if self._in_flight.get(source_id) is utterance:
                del self._in_flight[source_id]
            if not utterance.cancelled:
                self._finish(utterance)
            log_event(f"SPEAK_END outcome={outcome.value}", stage="tts", source=source_id)

    async def _first_ready(self, utterance: _Utterance):
        for backend in self.backends:
            if not backend.is_enabled():
                logger.debug(f"[TTS] {backend.name} disabled, skipping")
                continue
            result = await self._synthesize(backend, utterance)
            if result.status is SynthesisStatus.READY:
                logger.info(f"[TTS] {utterance.source_id}: using {backend.name}")
                return backend, result
            if result.status is SynthesisStatus.FATAL:
                logger.error(f"[TTS] {backend.name} fatal: {result.error}")
                break
            logger.warning(f"[TTS] {backend.name} unavailable ({result.error}), trying next backend")
        return None, None

    async def _synthesize(self, backend: SynthesisBackend, utterance: _Utterance) -> SynthesisResult:
        async with Watchdog("synthesis", TTS_WATCHDOG_SECONDS, source=utterance.source_id) as wd:
            try:
                if backend.timeout_seconds is not None:
                    result = await asyncio.wait_for(backend.synthesize(utterance.text), backend.timeout_seconds)
                else:
                    result = await backend.synthesize(utterance.text)
            except asyncio.TimeoutError as e:
                logger.warning(f"[TTS] {backend.name} timed out after {backend.timeout_seconds}s")
                return SynthesisResult.retry_next(backend.name, e)
            except Exception as e:
                logger.warning(f"[TTS] {backend.name} raised {type(e).__name__}: {e}")
                return SynthesisResult.retry_next(backend.name, e)
        log_latency(f"synthesis:{backend.name}", wd.elapsed_seconds * 1000, source=utterance.source_id)
        return result

    def _finish(self, utterance: _Utterance) -> None:
        if utterance.ended:
            return
        utterance.ended = True
        self._invoke(utterance.on_end, utterance.source_id, "on_end")

    @staticmethod
    def _invoke(callback: Callback, source_id: str, label: str) -> None:
        if callback is None:
            return
        try:
            callback()
        except Exception as e:
            logger.error(f"[TTS] {source_id}: {label} callback raised {type(e).__name__}: {e}")
