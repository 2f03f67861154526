"""Shared fakes: in-memory synthesis backends, response client and clock."""

import asyncio
from types import SimpleNamespace

import pytest

from tutor_core.activity_tracker import ActivityTracker
from tutor_core.config import Config, default_config
from tutor_core.response_client import GeneratedResponse, ResponseClient
from tutor_core.response_coordinator import ResponseCoordinator
from tutor_core.session_context import SessionContext
from tutor_core.speech_engine import SpeechEngine
from tutor_core.synthesis import SynthesisBackend, SynthesisResult, SynthesisStatus


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend(SynthesisBackend):
    """Synthesis strategy that records calls and plays until released."""

    def __init__(
        self,
        name="fake",
        status=SynthesisStatus.READY,
        raises=None,
        play_error=None,
        timeout_seconds=None,
        synth_delay=0.0,
        hold=False,
        enabled=True,
    ):
        self.name = name
        self.status = status
        self.raises = raises
        self.play_error = play_error
        self.timeout_seconds = timeout_seconds
        self.synth_delay = synth_delay
        self.enabled = enabled
        self.synthesized = []
        self.played = []
        self.stops = 0
        self.gate = asyncio.Event() if hold else None

    def is_enabled(self):
        return self.enabled

    async def synthesize(self, text):
        self.synthesized.append(text)
        if self.synth_delay:
            await asyncio.sleep(self.synth_delay)
        if self.raises is not None:
            raise self.raises
        if self.status is SynthesisStatus.READY:
            return SynthesisResult.ready(self.name, text)
        return SynthesisResult(self.status, self.name)

    async def play(self, clip):
        self.played.append(clip)
        if self.play_error is not None:
            raise self.play_error
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)

    def stop(self):
        self.stops += 1
        if self.gate is not None:
            self.gate.set()

    def release(self):
        self.gate.set()


class FakeResponseClient(ResponseClient):
    """Answers with canned text (or raises) and records every request."""

    def __init__(self, reply="Hello, star explorer!", error=None):
        self.reply = reply
        self.error = error
        self.calls = []
        self.gate = None

    def hold(self):
        self.gate = asyncio.Event()

    def release(self):
        self.gate.set()

    async def generate(self, prompt, user_info, context, request_type="chat", trigger=None):
        self.calls.append(
            SimpleNamespace(
                prompt=prompt,
                user_info=user_info,
                context=context,
                request_type=request_type,
                trigger=trigger,
            )
        )
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        text = self.reply(prompt) if callable(self.reply) else self.reply
        return GeneratedResponse(text=text, type=request_type)


def make_config(**coordinator) -> Config:
    data = default_config().as_dict()
    data["coordinator"]["queue_drain_delay_seconds"] = 0
    data["coordinator"].update(coordinator)
    return Config(data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def harness(clock):
    """Session + engine (one fake backend) + coordinator on a fake client."""
    config = make_config()
    session = SessionContext(config=config, activity=ActivityTracker(clock=clock))
    backend = FakeBackend()
    engine = SpeechEngine(session, backends=[backend])
    client = FakeResponseClient()
    coordinator = ResponseCoordinator(session, engine, client, clock=clock)
    yield SimpleNamespace(
        clock=clock,
        config=config,
        session=session,
        backend=backend,
        engine=engine,
        client=client,
        coordinator=coordinator,
        store=coordinator.store,
    )
    session.close()
