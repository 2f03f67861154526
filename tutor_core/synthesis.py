"""
SYNTHESIS STRATEGIES

Ordered text-to-speech backends tried by the SpeechEngine, best first:
- EdgeTTSBackend: Microsoft Edge neural voices (networked, higher quality)
- Pyttsx3Backend: platform speech via pyttsx3 (local, always last)

Every backend splits an utterance in two phases:
- synthesize(text) -> SynthesisResult   (tagged: ready / retry_next / fatal)
- play(clip)                            (returns on natural end, raises on error)

A failure in synthesize() means "try the next backend". A failure in play()
means the utterance is over: the engine does not replay it elsewhere.

stop() must be idempotent, instant and must never raise.
"""

# ============================================================================
# 1) IMPORTS
# ============================================================================
import asyncio
import concurrent.futures
import io
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence

import edge_tts
import numpy as np
import pyttsx3
from pydub import AudioSegment

from tutor_core.errors import SynthesisError

logger = logging.getLogger("TUTOR.Synthesis")


# ============================================================================
# 2) TAGGED RESULTS
# ============================================================================
class SynthesisStatus(Enum):
    READY = "ready"
    RETRY_NEXT = "retry_next"
    FATAL = "fatal"


@dataclass
class SynthesisResult:
    status: SynthesisStatus
    backend: str
    clip: Any = None
    error: Optional[BaseException] = None

    @classmethod
    def ready(cls, backend: str, clip: Any) -> "SynthesisResult":
        return cls(SynthesisStatus.READY, backend, clip=clip)

    @classmethod
    def retry_next(cls, backend: str, error: Optional[BaseException] = None) -> "SynthesisResult":
        return cls(SynthesisStatus.RETRY_NEXT, backend, error=error)

    @classmethod
    def fatal(cls, backend: str, error: Optional[BaseException] = None) -> "SynthesisResult":
        return cls(SynthesisStatus.FATAL, backend, error=error)


@dataclass
class AudioClip:
    samples: np.ndarray
    sample_rate: int


# ============================================================================
# 3) BACKEND INTERFACE
# ============================================================================
class SynthesisBackend(ABC):
    """
    One synthesis strategy.

    timeout_seconds bounds synthesize() only; None means no bound (the local
    platform engine cannot be interrupted mid-initialisation anyway).
    """

    name = "backend"
    timeout_seconds: Optional[float] = None

    def is_enabled(self) -> bool:
        return True

    @abstractmethod
    async def synthesize(self, text: str) -> SynthesisResult:
        pass

    @abstractmethod
    async def play(self, clip: Any) -> None:
        pass

    def stop(self) -> None:
        pass


# ============================================================================
# 4) TEXT SHAPING
# ============================================================================
def sanitize_for_speech(text: str) -> str:
    """Remove markup a voice would otherwise read out loud."""
    if not text or not text.strip():
        return ""
    cleaned = re.sub(r"\[(.*?)\]\((.*?)\)", r"\1", text)
    cleaned = re.sub(r"[`*_#]+", "", cleaned)
    cleaned = re.sub(r"^\s*[-•]\s+", "", cleaned, flags=re.MULTILINE)
    cleaned = re.sub(r"\s+", " ", cleaned)
    return cleaned.strip()


# ============================================================================
# 5) EDGE-TTS (PRIMARY, NETWORKED)
# ============================================================================
class EdgeTTSBackend(SynthesisBackend):
    """
    Cloud neural voices via the edge-tts package.

    synthesize() streams MP3 from the service and decodes it with pydub.
    play() hands float32 samples to sounddevice and polls the stream so the
    event loop stays free and stop() can cut playback at any point.
    """

    name = "edge-tts"

    def __init__(self, voice: str = "en-US-AriaNeural", enabled: bool = True, timeout_seconds: float = 10.0):
        self.voice = voice
        self.enabled = enabled
        self.timeout_seconds = timeout_seconds
        # Edge-TTS requires rate/pitch/volume as strings with units
        self.rate = "+0%"
        self.pitch = "+0Hz"
        self.volume = "+0%"
        self._stop_requested = False

    def is_enabled(self) -> bool:
        return self.enabled and bool(self.voice)

    async def synthesize(self, text: str) -> SynthesisResult:
        try:
            communicate = edge_tts.Communicate(
                text=text,
                voice=self.voice,
                rate=self.rate,
                pitch=self.pitch,
                volume=self.volume,
            )
            audio = bytearray()
            async for chunk in communicate.stream():
                if chunk["type"] == "audio":
                    audio.extend(chunk["data"])
            if not audio:
                return SynthesisResult.retry_next(self.name, SynthesisError("edge-tts returned no audio"))
            clip = await asyncio.to_thread(self._decode, bytes(audio))
        except Exception as e:
            logger.warning(f"[TTS] edge-tts synthesis failed: {type(e).__name__}: {e}")
            return SynthesisResult.retry_next(self.name, e)
        return SynthesisResult.ready(self.name, clip)

    @staticmethod
    def _decode(data: bytes) -> AudioClip:
        segment = AudioSegment.from_file(io.BytesIO(data), format="mp3")
        samples = np.array(segment.get_array_of_samples())
        if segment.channels > 1:
            samples = samples.reshape((-1, segment.channels))
        samples = samples.astype(np.float32) / (1 << (8 * segment.sample_width - 1))
        # Normalize to prevent clipping
        peak = float(np.max(np.abs(samples))) if samples.size else 0.0
        if peak > 0:
            samples = samples * (0.8 / peak)
        return AudioClip(samples=samples, sample_rate=segment.frame_rate)

    async def play(self, clip: AudioClip) -> None:
        import sounddevice as sd

        self._stop_requested = False
        try:
            sd.play(clip.samples, samplerate=clip.sample_rate, blocking=False)
        except Exception as e:
            raise SynthesisError(f"edge-tts playback failed to start: {e}") from e
        try:
            while not self._stop_requested:
                stream = sd.get_stream()
                if not stream or not stream.active:
                    break
                await asyncio.sleep(0.02)
        except asyncio.CancelledError:
            self.stop()
            raise
        except Exception as e:
            self.stop()
            raise SynthesisError(f"edge-tts playback failed: {e}") from e

    def stop(self) -> None:
        self._stop_requested = True
        try:
            import sounddevice as sd
            sd.stop()
        except Exception:
            pass  # Already stopped or no device


# ============================================================================
# 6) VOICE SELECTION (LOCAL ENGINE)
# ============================================================================
@dataclass(frozen=True)
class VoiceInfo:
    id: str
    name: str
    language: str = ""
    local: bool = True

    def matches_language(self, language: str) -> bool:
        return bool(language) and self.language.lower().startswith(language.lower())


def select_voice(
    voices: Sequence[VoiceInfo],
    preferred_name: Optional[str] = None,
    language: str = "en",
) -> Optional[VoiceInfo]:
    """
    Deterministic preference order:
    named voice → language-matched local → any local → language-matched → first.
    """
    if not voices:
        return None
    candidates = (
        lambda v: bool(preferred_name) and v.name == preferred_name,
        lambda v: v.local and v.matches_language(language),
        lambda v: v.local,
        lambda v: v.matches_language(language),
    )
    for predicate in candidates:
        for voice in voices:
            if predicate(voice):
                return voice
    return voices[0]


def _voice_language(raw_languages: Iterable[Any]) -> str:
    # espeak reports languages as bytes with a leading priority byte (b"\x05en-gb")
    for lang in raw_languages or ():
        if isinstance(lang, bytes):
            lang = lang[1:].decode("ascii", errors="ignore") if lang[:1] and lang[0] < 32 else lang.decode("ascii", errors="ignore")
        if lang:
            return str(lang).replace("_", "-")
    return ""


def describe_pyttsx3_voices(raw_voices: Iterable[Any]) -> List[VoiceInfo]:
    voices = []
    for v in raw_voices or ():
        voices.append(
            VoiceInfo(
                id=getattr(v, "id", ""),
                name=getattr(v, "name", "") or "",
                language=_voice_language(getattr(v, "languages", None)),
                local=True,
            )
        )
    return voices


# ============================================================================
# 7) PYTTSX3 (SECONDARY, LOCAL)
# ============================================================================
class Pyttsx3Backend(SynthesisBackend):
    """
    Platform speech (SAPI5 / NSSpeech / espeak) through pyttsx3.

    All engine calls run on one dedicated worker thread: pyttsx3 drivers are
    not safe to drive from several threads. No timeout: a hung platform call
    is not recoverable from here.
    """

    name = "pyttsx3"

    def __init__(self, preferred_voice: Optional[str] = None, language: str = "en", rate: int = 180):
        self.preferred_voice = preferred_voice
        self.language = language
        self.rate = rate
        self._engine = None
        self._selected_voice: Optional[VoiceInfo] = None
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="pyttsx3")

    @property
    def selected_voice(self) -> Optional[VoiceInfo]:
        return self._selected_voice

    def _ensure_engine(self):
        if self._engine is None:
            engine = pyttsx3.init()
            engine.setProperty("rate", self.rate)
            engine.setProperty("volume", 1.0)
            voice = select_voice(
                describe_pyttsx3_voices(engine.getProperty("voices")),
                preferred_name=self.preferred_voice,
                language=self.language,
            )
            if voice is not None:
                engine.setProperty("voice", voice.id)
                logger.info(f"[TTS] pyttsx3 voice: {voice.name} ({voice.language or '?'})")
            self._selected_voice = voice
            self._engine = engine
        return self._engine

    async def synthesize(self, text: str) -> SynthesisResult:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._executor, self._ensure_engine)
        except Exception as e:
            logger.error(f"[TTS] pyttsx3 unavailable: {type(e).__name__}: {e}")
            return SynthesisResult.fatal(self.name, e)
        return SynthesisResult.ready(self.name, text)

    def _speak_blocking(self, text: str) -> None:
        engine = self._ensure_engine()
        engine.say(text)
        engine.runAndWait()

    async def play(self, clip: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._executor, self._speak_blocking, clip)
        except asyncio.CancelledError:
            self.stop()
            raise
        except Exception as e:
            raise SynthesisError(f"pyttsx3 playback failed: {e}") from e

    def stop(self) -> None:
        if self._engine is None:
            return
        try:
            self._engine.stop()
        except Exception:
            pass  # Driver already idle


def build_default_backends(config) -> List[SynthesisBackend]:
    """Primary first, local last, from config."""
    return [
        EdgeTTSBackend(
            voice=config.get("tts.primary.voice", "en-US-AriaNeural"),
            enabled=config.get_bool("tts.primary.enabled", True),
            timeout_seconds=config.get_float("tts.primary.timeout_seconds", 10.0),
        ),
        Pyttsx3Backend(
            preferred_voice=config.get("tts.secondary.preferred_voice"),
            language=config.get("tts.secondary.language", "en"),
            rate=config.get_int("tts.secondary.rate", 180),
        ),
    ]
