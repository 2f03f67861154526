"""
Console runner for the tutor voice core.

Type a message to chat with the tutor. Commands:
  /mute        toggle avatar mute
  /idle        toggle idle remarks
  /mood <e>    feed an emotion sample (e.g. /mood happy)
  /lesson <t>  narrate a lesson welcome for title <t>
  /history     show recent conversation
  /quit        exit

The tutor greets once at startup and makes an idle remark when the learner
has been quiet for long enough.
"""

import asyncio
import logging
import sys

from tutor_core.config import load_config
from tutor_core.conversation_store import EmotionSample
from tutor_core.response_client import HttpResponseClient
from tutor_core.response_coordinator import ResponseCoordinator
from tutor_core.session_context import SessionContext, session_scope, use_session
from tutor_core.speech_engine import SpeechEngine

config = load_config()
logging.basicConfig(
    level=getattr(logging, str(config.get("system.log_level", "INFO")).upper(), logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("TUTOR.Main")

USER_INFO = {"uid": "console-user", "displayName": "Explorer"}
IDLE_CHECK_SECONDS = 15


async def idle_loop(coordinator: ResponseCoordinator) -> None:
    while True:
        await asyncio.sleep(IDLE_CHECK_SECONDS)
        await coordinator.handle_idle_check(USER_INFO)


async def handle_line(coordinator: ResponseCoordinator, line: str) -> bool:
    session = use_session()
    if line == "/quit":
        return False
    if line == "/mute":
        print(f"muted={session.toggle_avatar_mute()}")
    elif line == "/idle":
        print(f"idle remarks={session.toggle_idle_responses()}")
    elif line.startswith("/mood "):
        coordinator.update_emotion_context(EmotionSample(emotion=line[6:].strip(), confidence=0.9))
        await coordinator.handle_emotion_aware_response(USER_INFO)
    elif line.startswith("/lesson "):
        await coordinator.handle_lesson_narration(USER_INFO, {"title": line[8:].strip()})
    elif line == "/history":
        for entry in coordinator.get_recent_history(10):
            print(f"  {entry.type}: {entry.content}")
    elif line:
        result = await coordinator.handle_user_chat(line, USER_INFO)
        if result is not None:
            print(f"Tutor: {result.text}")
    return True


async def main() -> None:
    session = SessionContext(config=config)
    engine = SpeechEngine(session)
    client = HttpResponseClient.from_config(config)
    coordinator = ResponseCoordinator(session, engine, client)
    coordinator.store.start_sweeper()
    session.activity.record_activity()

    with session_scope(session):
        greeting = await coordinator.handle_greeting(USER_INFO)
        if greeting is not None:
            print(f"Tutor: {greeting.text}")

        idle_task = asyncio.create_task(idle_loop(coordinator))
        try:
            while True:
                line = (await asyncio.to_thread(sys.stdin.readline))
                if not line:
                    break
                session.activity.record_activity()
                if not await handle_line(coordinator, line.strip()):
                    break
        finally:
            idle_task.cancel()
            coordinator.close()
            engine.close()
            client.close()
            session.close()
            logger.info("[MAIN] Session closed")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
