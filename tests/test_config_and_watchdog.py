import json
import logging

import pytest

from conftest import FakeClock
from tutor_core.config import Config, default_config, load_config
from tutor_core.instrumentation import log_latency
from tutor_core.watchdog import Watchdog


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("TUTOR_API_BASE_URL", "EDGE_TTS_ENABLED", "TUTOR_VOICE"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestConfig:
    def test_defaults(self):
        config = default_config()
        assert config.get("conversation.max_entries") == 20
        assert config.get("coordinator.emotion_rate_limit_seconds") == 15
        assert config.get("coordinator.idle_rate_limit_seconds") == 300
        assert config.get("speech.avatar_source") == "avatar"
        assert config["responses.base_url"] == "http://localhost:5000"
        assert config.get("nonexistent.key", "fallback") == "fallback"

    def test_missing_file_uses_defaults(self, tmp_path, clean_env):
        config = load_config(str(tmp_path / "config.json"), env_path=str(tmp_path / ".env"))
        assert config.as_dict() == default_config().as_dict()

    def test_file_merges_deeply(self, tmp_path, clean_env):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"tts": {"primary": {"voice": "en-GB-SoniaNeural"}}}))
        config = load_config(str(path), env_path=str(tmp_path / ".env"))
        assert config.get("tts.primary.voice") == "en-GB-SoniaNeural"
        assert config.get("tts.primary.enabled") is True

    def test_invalid_file_falls_back(self, tmp_path, clean_env):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        config = load_config(str(path), env_path=str(tmp_path / ".env"))
        assert config.get("conversation.max_entries") == 20

    def test_environment_wins(self, tmp_path, clean_env):
        clean_env.setenv("TUTOR_API_BASE_URL", "https://tutor.example.com/")
        clean_env.setenv("EDGE_TTS_ENABLED", "false")
        clean_env.setenv("TUTOR_VOICE", "en-AU-NatashaNeural")
        config = load_config(str(tmp_path / "config.json"), env_path=str(tmp_path / ".env"))
        assert config.get("responses.base_url") == "https://tutor.example.com"
        assert config.get("tts.primary.enabled") is False
        assert config.get("tts.primary.voice") == "en-AU-NatashaNeural"

    def test_typed_getters(self):
        config = Config({"a": {"n": "3", "f": "0.5", "bad": "x", "flag": "yes"}})
        assert config.get_int("a.n", 0) == 3
        assert config.get_float("a.f", 0.0) == 0.5
        assert config.get_float("a.bad", 1.5) == 1.5
        assert config.get_bool("a.flag", False) is True
        assert config.get_bool("a.missing", True) is True


class TestWatchdog:
    def test_under_threshold(self):
        clock = FakeClock()
        with Watchdog("generation", 5, clock=clock) as wd:
            clock.advance(1)
        assert not wd.triggered
        assert wd.elapsed_seconds == 1

    def test_over_threshold(self):
        clock = FakeClock()
        with Watchdog("synthesis", 2, source="chat", clock=clock) as wd:
            clock.advance(3)
        result = wd.result()
        assert result.triggered
        assert result.block == "synthesis"
        assert result.source == "chat"
        assert result.elapsed_seconds == 3

    def test_no_threshold_never_triggers(self):
        clock = FakeClock()
        with Watchdog("generation", None, clock=clock) as wd:
            clock.advance(1000)
        assert not wd.triggered

    def test_exception_propagates(self):
        clock = FakeClock()
        with pytest.raises(ValueError):
            with Watchdog("generation", 1, clock=clock) as wd:
                clock.advance(2)
                raise ValueError("boom")
        assert wd.triggered

    @pytest.mark.asyncio
    async def test_async_context(self):
        clock = FakeClock()
        async with Watchdog("generation", 1, clock=clock) as wd:
            clock.advance(2)
        assert wd.triggered


def test_latency_line_names_block_and_source(caplog):
    with caplog.at_level(logging.INFO, logger="TUTOR.Events"):
        log_latency("synthesis:edge-tts", 412.6, source="avatar")
    assert "[LATENCY] source=avatar block=synthesis:edge-tts elapsed=413ms" in caplog.text
