"""
Speech engine lifecycle tests.

Every utterance must leave the channel clean and fire on_end exactly once,
except when cancelled (never fires).
"""

import asyncio

import pytest

from conftest import FakeBackend
from tutor_core.errors import SynthesisError
from tutor_core.session_context import SessionContext
from tutor_core.speech_engine import SpeechEngine, SpeechOutcome
from tutor_core.synthesis import SynthesisStatus


class Recorder:
    def __init__(self):
        self.starts = 0
        self.ends = 0

    def on_start(self):
        self.starts += 1

    def on_end(self):
        self.ends += 1


async def until(predicate, ticks=200):
    for _ in range(ticks):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def make_engine(*backends):
    session = SessionContext()
    return session, SpeechEngine(session, backends=list(backends))


class TestSpeakLifecycle:
    @pytest.mark.asyncio
    async def test_completed_utterance(self):
        backend = FakeBackend()
        session, engine = make_engine(backend)
        rec = Recorder()

        outcome = await engine.speak("chat", "  Hello **there**  ", rec.on_start, rec.on_end)

        assert outcome is SpeechOutcome.COMPLETED
        assert backend.played == ["Hello there"]
        assert (rec.starts, rec.ends) == (1, 1)
        assert not session.channel.is_any_speaking()
        assert not engine.is_speaking("chat")

    @pytest.mark.asyncio
    async def test_source_registered_only_while_playing(self):
        backend = FakeBackend(hold=True)
        session, engine = make_engine(backend)

        handle = engine.speak("chat", "Counting stars")
        await until(lambda: backend.played)
        assert session.channel.active_source() == "chat"

        backend.release()
        await handle
        assert session.channel.active_sources() == ()

    @pytest.mark.asyncio
    async def test_empty_text_skips_without_sync_callback(self):
        backend = FakeBackend()
        session, engine = make_engine(backend)
        rec = Recorder()

        handle = engine.speak("chat", "   ", rec.on_start, rec.on_end)
        assert rec.ends == 0

        assert await handle is SpeechOutcome.SKIPPED
        await asyncio.sleep(0)
        assert (rec.starts, rec.ends) == (0, 1)
        assert backend.synthesized == []
        assert not session.channel.is_any_speaking()


class TestMute:
    @pytest.mark.asyncio
    async def test_muted_avatar_is_skipped(self):
        backend = FakeBackend()
        session, engine = make_engine(backend)
        session.toggle_avatar_mute()
        rec = Recorder()

        outcome = await engine.speak("avatar", "hello", rec.on_start, rec.on_end)
        await asyncio.sleep(0)

        assert outcome is SpeechOutcome.SKIPPED
        assert rec.starts == 0
        assert rec.ends == 1
        assert backend.synthesized == []
        assert session.channel.active_sources() == ()

    @pytest.mark.asyncio
    async def test_force_overrides_mute(self):
        backend = FakeBackend()
        session, engine = make_engine(backend)
        session.toggle_avatar_mute()

        outcome = await engine.speak("avatar", "hello", force=True)

        assert outcome is SpeechOutcome.COMPLETED
        assert backend.played == ["hello"]

    @pytest.mark.asyncio
    async def test_mute_applies_to_avatar_only(self):
        backend = FakeBackend()
        session, engine = make_engine(backend)
        session.toggle_avatar_mute()

        outcome = await engine.speak("lesson-narrator", "Welcome to orbit")

        assert outcome is SpeechOutcome.COMPLETED


class TestFallback:
    @pytest.mark.asyncio
    async def test_primary_raises_secondary_speaks_once(self):
        primary = FakeBackend(name="primary", raises=ConnectionError("offline"))
        secondary = FakeBackend(name="secondary")
        session, engine = make_engine(primary, secondary)
        rec = Recorder()

        outcome = await engine.speak("chat", "hello", rec.on_start, rec.on_end)

        assert outcome is SpeechOutcome.COMPLETED
        assert primary.played == []
        assert secondary.played == ["hello"]
        assert (rec.starts, rec.ends) == (1, 1)
        assert not session.channel.is_any_speaking()

    @pytest.mark.asyncio
    async def test_primary_timeout_falls_back(self):
        primary = FakeBackend(name="primary", synth_delay=1.0, timeout_seconds=0.01)
        secondary = FakeBackend(name="secondary")
        _, engine = make_engine(primary, secondary)

        outcome = await engine.speak("chat", "hello")

        assert outcome is SpeechOutcome.COMPLETED
        assert secondary.played == ["hello"]

    @pytest.mark.asyncio
    async def test_retry_next_and_disabled_backends_are_skipped(self):
        disabled = FakeBackend(name="disabled", enabled=False)
        retry = FakeBackend(name="retry", status=SynthesisStatus.RETRY_NEXT)
        last = FakeBackend(name="last")
        _, engine = make_engine(disabled, retry, last)

        assert await engine.speak("chat", "hello") is SpeechOutcome.COMPLETED
        assert disabled.synthesized == []
        assert retry.synthesized == ["hello"]
        assert last.played == ["hello"]

    @pytest.mark.asyncio
    async def test_fatal_stops_the_chain(self):
        fatal = FakeBackend(name="fatal", status=SynthesisStatus.FATAL)
        never = FakeBackend(name="never")
        session, engine = make_engine(fatal, never)
        rec = Recorder()

        outcome = await engine.speak("chat", "hello", rec.on_start, rec.on_end)

        assert outcome is SpeechOutcome.FAILED
        assert never.synthesized == []
        assert (rec.starts, rec.ends) == (0, 1)
        assert not session.channel.is_any_speaking()

    @pytest.mark.asyncio
    async def test_playback_error_unregisters_and_ends(self):
        backend = FakeBackend(play_error=SynthesisError("device lost"))
        session, engine = make_engine(backend)
        rec = Recorder()

        outcome = await engine.speak("chat", "hello", rec.on_start, rec.on_end)

        assert outcome is SpeechOutcome.FAILED
        assert (rec.starts, rec.ends) == (1, 1)
        assert not session.channel.is_any_speaking()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_stops_unregisters_and_skips_on_end(self):
        backend = FakeBackend(hold=True)
        session, engine = make_engine(backend)
        rec = Recorder()

        handle = engine.speak("chat", "a very long explanation", rec.on_start, rec.on_end)
        await until(lambda: session.channel.is_registered("chat"))

        assert engine.cancel("chat") is True
        assert not session.channel.is_registered("chat")
        assert backend.stops == 1

        assert await handle is SpeechOutcome.CANCELLED
        await asyncio.sleep(0)
        assert rec.starts == 1
        assert rec.ends == 0

    @pytest.mark.asyncio
    async def test_cancel_with_nothing_in_flight(self):
        session, engine = make_engine(FakeBackend())
        assert engine.cancel("chat") is False
        assert not session.channel.is_any_speaking()

    @pytest.mark.asyncio
    async def test_new_speak_supersedes_in_flight(self):
        backend = FakeBackend(hold=True)
        session, engine = make_engine(backend)
        first, second = Recorder(), Recorder()

        old = engine.speak("chat", "first", on_end=first.on_end)
        await until(lambda: session.channel.is_registered("chat"))
        new = engine.speak("chat", "second", on_end=second.on_end)

        assert await old is SpeechOutcome.CANCELLED
        assert await new is SpeechOutcome.COMPLETED
        assert first.ends == 0
        assert second.ends == 1
        assert session.channel.active_sources() == ()

    @pytest.mark.asyncio
    async def test_supersede_before_first_utterance_starts(self):
        backend = FakeBackend()
        session, engine = make_engine(backend)
        first, second = Recorder(), Recorder()

        old = engine.speak("chat", "first", first.on_start, first.on_end)
        new = engine.speak("chat", "second", second.on_start, second.on_end)

        assert await old is SpeechOutcome.CANCELLED
        assert await new is SpeechOutcome.COMPLETED
        assert backend.synthesized == ["second"]
        assert (first.starts, first.ends) == (0, 0)
        assert (second.starts, second.ends) == (1, 1)
        assert session.channel.active_sources() == ()

    @pytest.mark.asyncio
    async def test_cancel_before_task_runs(self):
        backend = FakeBackend()
        session, engine = make_engine(backend)
        rec = Recorder()

        handle = engine.speak("avatar", "hello", rec.on_start, rec.on_end)
        assert engine.cancel("avatar") is True

        assert await handle is SpeechOutcome.CANCELLED
        await asyncio.sleep(0)
        assert backend.synthesized == []
        assert (rec.starts, rec.ends) == (0, 0)
        assert not engine.is_speaking("avatar")

    @pytest.mark.asyncio
    async def test_overlapping_sources_elect_first(self):
        backend = FakeBackend(hold=True)
        session, engine = make_engine(backend)

        avatar = engine.speak("avatar", "one")
        await until(lambda: session.channel.is_registered("avatar"))
        chat = engine.speak("chat", "two")
        await until(lambda: session.channel.is_registered("chat"))

        assert session.channel.active_source() == "avatar"
        engine.close()
        await asyncio.gather(avatar, chat)
        assert session.channel.active_sources() == ()


@pytest.mark.asyncio
async def test_callback_errors_do_not_leak_registration():
    backend = FakeBackend()
    session, engine = make_engine(backend)

    def boom():
        raise ValueError("ui gone")

    outcome = await engine.speak("chat", "hello", on_start=boom, on_end=boom)

    assert outcome is SpeechOutcome.COMPLETED
    assert not session.channel.is_any_speaking()
