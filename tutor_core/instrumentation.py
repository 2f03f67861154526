"""
Instrumentation module for the tutor voice core.

Provides millisecond-precision event logging for arbitration verification:
- Channel register/unregister ordering
- Utterance lifecycle (start/end/cancel)
- Admission decisions and queue drains
"""

import logging
import time

logger = logging.getLogger("TUTOR.Events")


def log_event(event: str, stage: str = "", source: str = ""):
    """
    Log event with monotonic timeline metadata.

    Format: [EVT] t=<ms> source=<source> stage=<stage> event=<event>

    Args:
        event: Event label/message
        stage: Optional stage name (e.g., "channel", "tts", "admission")
        source: Optional speech source id for correlation
    """
    ts = int(time.monotonic() * 1000)
    logger.info(f"[EVT] t={ts} source={source} stage={stage} event={event}")


def log_latency(block: str, elapsed_ms: float, source: str = ""):
    """Record how long a timed block (generation call, synthesis) took."""
    logger.info(f"[LATENCY] source={source} block={block} elapsed={elapsed_ms:.0f}ms")
