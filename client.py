#!/usr/bin/env python3
"""Client wiring for ConversationSync plus a small demo against the reference server"""
import asyncio
import logging
import sys

from config import Config
from domain.models import Participant, SessionState
from events.publisher import EventPublisher
from sync.conversation_sync import ConversationSync
from sync.cooldown import SendCooldown
from transport.http_history import HttpHistoryFetcher
from transport.push_channel import StompPushChannel

logger = logging.getLogger(__name__)


def create_session(user: Participant, token: str, config: type[Config] = Config) -> SessionState:
    cooldown = SendCooldown(
        messages_per_window=config.COOLDOWN_MESSAGES_PER_WINDOW,
        window_seconds=config.COOLDOWN_WINDOW_SECONDS,
        cooldown_seconds=config.COOLDOWN_SECONDS,
    )
    return SessionState(current_user=user, token=token, cooldown=cooldown)


def create_conversation_sync(
    session: SessionState,
    config: type[Config] = Config,
    publisher: EventPublisher | None = None,
) -> ConversationSync:
    """Build a ConversationSync backed by the REST API and the STOMP push channel"""
    history = HttpHistoryFetcher(config.API_BASE_URL, session.token, timeout=config.REQUEST_TIMEOUT_SECONDS)
    channel = StompPushChannel(
        config.WS_URL,
        session.token,
        session.current_user.id,
        reconnect_delay=config.RECONNECT_DELAY_SECONDS,
        connect_timeout=config.CONNECT_TIMEOUT_SECONDS,
    )
    return ConversationSync(
        session,
        history,
        channel,
        publisher=publisher,
        dedup_window=config.DEDUP_WINDOW_SECONDS,
    )


async def main(user_id: int, counterpart_id: int, text: str) -> None:
    """Connect as user_id, open the conversation with counterpart_id and send text"""
    session = create_session(Participant(id=user_id), token=str(user_id))
    publisher = EventPublisher()
    publisher.add_listener(lambda event: print(f"Event: {event['type']} {event}"))
    sync = create_conversation_sync(session, publisher=publisher)

    state = await sync.start()
    print(f"Push channel: {state}")
    try:
        conversation = await sync.open(Participant(id=counterpart_id))
        print(f"History: {len(conversation.messages)} message(s)")

        pending = await sync.send(None, text)
        if pending is not None:
            print(f"Sent via {pending.transport}: {pending.status}")

        # Give the push echo a moment to arrive
        await asyncio.sleep(2.0)
        for message in sync.conversation(counterpart_id).messages:
            print(f"[{message.timestamp:%H:%M:%S}] {message.sender_id} -> {message.receiver_id}: {message.content}")
    finally:
        await sync.stop()
        await sync.history.aclose()


if __name__ == "__main__":
    logging.basicConfig(level=Config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if len(sys.argv) < 4:
        print("Usage: client.py <user_id> <counterpart_id> <message>")
        sys.exit(1)
    asyncio.run(main(int(sys.argv[1]), int(sys.argv[2]), " ".join(sys.argv[3:])))
