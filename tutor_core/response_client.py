"""
Response service client.

The coordinator asks a ResponseClient for the tutor's next line. The client
does not retry and does not substitute fallback text: any failure surfaces as
ResponseServiceError and the coordinator decides what to say instead.

Request types:
- "chat":            direct learner message
- "avatar_response": unprompted avatar remark (idle, emotion, greeting)
- "tutoring":        lesson-scoped narration

HTTP contract (HttpResponseClient):
    POST {base_url}/api/chat/spacey
    body  {prompt, type, trigger, user: {id, email, name}, <context payload>}
    reply {response | message, type}
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from tutor_core.conversation_store import ContextPayload
from tutor_core.errors import ResponseServiceError
from tutor_core.instrumentation import log_event, log_latency
from tutor_core.policy import LLM_TIMEOUT_SECONDS, LLM_WATCHDOG_SECONDS
from tutor_core.watchdog import Watchdog

logger = logging.getLogger("TUTOR.ResponseClient")

CHAT = "chat"
AVATAR_RESPONSE = "avatar_response"
TUTORING = "tutoring"
REQUEST_TYPES = (CHAT, AVATAR_RESPONSE, TUTORING)


@dataclass(frozen=True)
class GeneratedResponse:
    text: str
    type: str = CHAT


class ResponseClient(ABC):
    @abstractmethod
    async def generate(
        self,
        prompt: str,
        user_info: Optional[Dict[str, Any]],
        context: ContextPayload,
        request_type: str = CHAT,
        trigger: Optional[str] = None,
    ) -> GeneratedResponse:
        """Return the generated reply or raise ResponseServiceError."""


def user_fields(user_info: Optional[Dict[str, Any]]) -> Dict[str, str]:
    user_info = user_info or {}
    return {
        "id": user_info.get("uid") or user_info.get("id") or "anonymous-user",
        "email": user_info.get("email") or "anonymous@example.com",
        "name": user_info.get("displayName") or user_info.get("name") or "Explorer",
    }


class HttpResponseClient(ResponseClient):
    """Blocking requests.post run in a worker thread, bounded by a timeout."""

    def __init__(
        self,
        base_url: str = "http://localhost:5000",
        timeout_seconds: float = LLM_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "HttpResponseClient":
        return cls(
            base_url=config.get("responses.base_url", "http://localhost:5000"),
            timeout_seconds=config.get_float("responses.timeout_seconds", LLM_TIMEOUT_SECONDS),
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}/api/chat/spacey"

    def build_payload(
        self,
        prompt: str,
        user_info: Optional[Dict[str, Any]],
        context: ContextPayload,
        request_type: str,
        trigger: Optional[str],
    ) -> Dict[str, Any]:
        if request_type not in REQUEST_TYPES:
            raise ValueError(f"Unknown request type: {request_type!r}")
        payload = {
            "prompt": prompt,
            "type": request_type,
            "trigger": trigger,
            "user": user_fields(user_info),
        }
        payload.update(context.to_request_dict())
        return payload

    async def generate(
        self,
        prompt: str,
        user_info: Optional[Dict[str, Any]],
        context: ContextPayload,
        request_type: str = CHAT,
        trigger: Optional[str] = None,
    ) -> GeneratedResponse:
        payload = self.build_payload(prompt, user_info, context, request_type, trigger)
        logger.debug(f"[LLM] POST {self.url} type={request_type} trigger={trigger}")

        async with Watchdog("generation", LLM_WATCHDOG_SECONDS, source=request_type) as wd:
            try:
                response = await asyncio.to_thread(
                    self.session.post, self.url, json=payload, timeout=self.timeout_seconds
                )
            except requests.RequestException as e:
                raise ResponseServiceError(f"Response service unreachable: {e}") from e

        log_latency("generation", wd.elapsed_seconds * 1000, source=request_type)
        if response.status_code != 200:
            raise ResponseServiceError(
                f"Response service returned status {response.status_code}: {response.text[:200]}"
            )

        try:
            result = response.json()
        except ValueError as e:
            raise ResponseServiceError(f"Response service returned invalid JSON: {e}") from e
        if not isinstance(result, dict):
            raise ResponseServiceError("Response service returned a non-object body")

        text = (result.get("response") or result.get("message") or "").strip()
        if not text:
            raise ResponseServiceError("Response service returned empty response")

        log_event("GENERATED", stage="generation", source=request_type)
        return GeneratedResponse(text=text, type=result.get("type") or request_type)

    def close(self) -> None:
        self.session.close()
