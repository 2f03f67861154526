import asyncio
from unittest.mock import MagicMock

import pytest
import requests

from tutor_core.conversation_store import ConversationStore, EmotionSample
from tutor_core.errors import ResponseServiceError
from tutor_core.response_client import HttpResponseClient, user_fields


def make_client(status=200, body=None, error=None):
    session = MagicMock()
    if error is not None:
        session.post.side_effect = error
    else:
        response = MagicMock()
        response.status_code = status
        response.text = "upstream says no"
        response.json.return_value = body if body is not None else {"response": "Hi there!", "type": "chat"}
        session.post.return_value = response
    return HttpResponseClient(base_url="http://tutor.local:5000/", timeout_seconds=7, session=session), session


async def context():
    store = ConversationStore()
    store.update_ambient_context(EmotionSample("happy", 0.9, "smiling"))
    # the emotion-change entry lands on the next loop turn
    await asyncio.sleep(0)
    return store.build_context_payload()


@pytest.mark.asyncio
async def test_posts_prompt_user_and_context():
    client, session = make_client()
    reply = await client.generate("hello", {"uid": "u1", "email": "u1@example.com"}, await context(), "chat")

    assert reply.text == "Hi there!"
    assert reply.type == "chat"
    args, kwargs = session.post.call_args
    assert args[0] == "http://tutor.local:5000/api/chat/spacey"
    assert kwargs["timeout"] == 7
    body = kwargs["json"]
    assert body["prompt"] == "hello"
    assert body["type"] == "chat"
    assert body["trigger"] is None
    assert body["user"] == {"id": "u1", "email": "u1@example.com", "name": "Explorer"}
    assert body["userMood"] == "happy"
    assert body["emotionContext"]["emotion"] == "happy"
    assert body["conversationHistory"][0]["type"] == "emotion-context"


@pytest.mark.asyncio
async def test_message_field_accepted():
    client, _ = make_client(body={"message": "  Via message  "})
    reply = await client.generate("hi", None, await context(), "avatar_response", trigger="idle")
    assert reply.text == "Via message"
    assert reply.type == "avatar_response"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"status": 500},
        {"body": {"response": "   "}},
        {"body": ["not", "an", "object"]},
        {"error": requests.ConnectionError("refused")},
        {"error": requests.Timeout("slow")},
    ],
)
async def test_failures_raise_service_error(kwargs):
    client, _ = make_client(**kwargs)
    with pytest.raises(ResponseServiceError):
        await client.generate("hi", None, await context())


@pytest.mark.asyncio
async def test_unknown_request_type_rejected():
    client, session = make_client()
    with pytest.raises(ValueError):
        await client.generate("hi", None, await context(), "broadcast")
    session.post.assert_not_called()


def test_anonymous_user_fields():
    assert user_fields(None) == {
        "id": "anonymous-user",
        "email": "anonymous@example.com",
        "name": "Explorer",
    }
    assert user_fields({"id": "x", "name": "Ada"})["name"] == "Ada"
