"""
Configuration Loader for the tutor voice core

Reads from config.json and provides a simple interface for accessing settings.
Defaults to the policy constants if config.json is missing.

Environment (.env is loaded via python-dotenv):
- TUTOR_API_BASE_URL: response service base URL
- EDGE_TTS_ENABLED: enable/disable the networked Edge-TTS backend
- TUTOR_VOICE: Edge-TTS neural voice name

Usage:
    from tutor_core.config import get_config
    config = get_config()
    window = config.get("coordinator.emotion_rate_limit_seconds")
"""

# ============================================================================
# 1) IMPORTS
# ============================================================================
import copy
import json
import os
import logging
from typing import Any, Optional

from dotenv import load_dotenv

from tutor_core import policy

# ============================================================================
# 2) MODULE LOGGER
# ============================================================================
logger = logging.getLogger("TUTOR.Config")


# ============================================================================
# 3) CONFIG WRAPPER (DOT-NOTATION ACCESS)
# ============================================================================
class Config:
    """Simple config wrapper with dot-notation access."""

    def __init__(self, data: dict):
        self._data = data

    # 3.1) Dot-notation getter
    def get(self, key: str, default: Any = None) -> Any:
        """
        Get config value using dot notation.

        Examples:
            config.get("conversation.max_entries")
            config.get("tts.primary.voice")
            config.get("nonexistent.key", "default_value")
        """
        value = self._data
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    # 3.2) Dict-style getter
    def __getitem__(self, key: str) -> Any:
        return self.get(key)

    # 3.3) Typed getters used by component constructors
    def get_float(self, key: str, default: float) -> float:
        try:
            return float(self.get(key, default))
        except (TypeError, ValueError):
            logger.warning(f"[Config] {key} is not numeric, using {default}")
            return default

    def get_int(self, key: str, default: int) -> int:
        try:
            return int(self.get(key, default))
        except (TypeError, ValueError):
            logger.warning(f"[Config] {key} is not an integer, using {default}")
            return default

    def get_bool(self, key: str, default: bool) -> bool:
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    def as_dict(self) -> dict:
        return copy.deepcopy(self._data)


# ============================================================================
# 4) DEFAULT CONFIGURATION (FALLBACK)
# ============================================================================
_DEFAULT_CONFIG = {
    "system": {
        "log_level": "INFO",
    },
    "activity": {
        "idle_threshold_seconds": policy.IDLE_THRESHOLD_SECONDS,
    },
    "conversation": {
        "max_entries": policy.CONVERSATION_MAX_ENTRIES,
        "max_age_seconds": policy.CONVERSATION_MAX_AGE_SECONDS,
        "sweep_interval_seconds": policy.CONVERSATION_SWEEP_INTERVAL_SECONDS,
        "context_entries": policy.CONTEXT_HISTORY_ENTRIES,
        "content_truncate_chars": policy.CONTEXT_TRUNCATE_CHARS,
        "fresh_interaction_seconds": policy.FRESH_INTERACTION_SECONDS,
    },
    "coordinator": {
        "emotion_rate_limit_seconds": policy.EMOTION_RATE_LIMIT_SECONDS,
        "idle_rate_limit_seconds": policy.IDLE_RATE_LIMIT_SECONDS,
        "queue_drain_delay_seconds": policy.QUEUE_DRAIN_DELAY_SECONDS,
        "chat_context_reset_seconds": policy.CHAT_CONTEXT_RESET_SECONDS,
        "emotion_confidence_threshold": policy.EMOTION_CONFIDENCE_THRESHOLD,
        "emotion_recency_seconds": policy.EMOTION_RECENCY_SECONDS,
    },
    "speech": {
        "avatar_source": policy.AVATAR_SOURCE,
        "coordinator_source": policy.CONVERSATION_SOURCE,
    },
    "tts": {
        "primary": {
            "enabled": True,
            "voice": "en-US-AriaNeural",
            "timeout_seconds": policy.TTS_TIMEOUT_SECONDS,
        },
        "secondary": {
            "preferred_voice": "Microsoft Zira Desktop",
            "language": "en",
            "rate": 180,
        },
    },
    "responses": {
        "base_url": "http://localhost:5000",
        "timeout_seconds": policy.LLM_TIMEOUT_SECONDS,
    },
}

# ============================================================================
# 5) CONFIG SINGLETON
# ============================================================================
_config_instance: Optional[Config] = None


# ============================================================================
# 6) LOAD / GET CONFIG
# ============================================================================
def load_config(config_path: str = "config.json", env_path: Optional[str] = None) -> Config:
    """
    Load configuration from JSON file and environment.

    Falls back to defaults if the file is missing or unreadable. Environment
    variables win over both.
    """
    global _config_instance

    load_dotenv(env_path)
    config_data = copy.deepcopy(_DEFAULT_CONFIG)

    if os.path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                _merge_dicts(config_data, json.load(f))
            logger.info(f"[Config] Loaded from {config_path}")
        except (OSError, ValueError) as e:
            logger.warning(f"[Config] Failed to load {config_path}: {e}, using defaults")
    else:
        logger.debug(f"[Config] No config file at {config_path}, using defaults")

    _apply_env_overrides(config_data)
    _config_instance = Config(config_data)
    return _config_instance


def get_config() -> Config:
    """Get current config instance (lazy load if needed)."""
    if _config_instance is None:
        return load_config()
    return _config_instance


def default_config() -> Config:
    """Defaults only: no file, no environment. Used by tests and embedders."""
    return Config(copy.deepcopy(_DEFAULT_CONFIG))


# ============================================================================
# 7) HELPERS
# ============================================================================
def _apply_env_overrides(data: dict) -> None:
    base_url = os.getenv("TUTOR_API_BASE_URL")
    if base_url:
        data["responses"]["base_url"] = base_url.rstrip("/")
    edge_enabled = os.getenv("EDGE_TTS_ENABLED")
    if edge_enabled is not None:
        data["tts"]["primary"]["enabled"] = edge_enabled.strip().lower() == "true"
    voice = os.getenv("TUTOR_VOICE")
    if voice:
        data["tts"]["primary"]["voice"] = voice


def _merge_dicts(base: dict, override: dict) -> None:
    """Deep merge override dict into base dict (modifies base in place)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _merge_dicts(base[key], value)
        else:
            base[key] = value
