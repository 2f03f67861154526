"""
PendingQueue: response requests that arrived while a generation was running.

FIFO. Each request is consumed exactly once, after the utterance that was
active when it arrived has finished.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger("TUTOR.PendingQueue")


@dataclass(frozen=True)
class PendingResponseRequest:
    input: str
    response_type: str
    user_info: Optional[Dict[str, Any]] = None
    timestamp: float = field(default_factory=time.monotonic)


class PendingQueue:
    def __init__(self):
        self._items: Deque[PendingResponseRequest] = deque()

    def push(self, request: PendingResponseRequest) -> None:
        self._items.append(request)
        logger.info(f"[QUEUE] queued {request.response_type} (pending={len(self._items)})")

    def pop(self) -> Optional[PendingResponseRequest]:
        if not self._items:
            return None
        return self._items.popleft()

    def peek(self) -> Optional[PendingResponseRequest]:
        return self._items[0] if self._items else None

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)
