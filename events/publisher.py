"""Event publishing from the sync engine to UI observers"""
import asyncio
import logging
from typing import Callable

from domain.models import (
    ConversationUpdatedEvent,
    MessageFailedEvent,
    ConnectionChangedEvent,
    UnreadChangedEvent,
)

logger = logging.getLogger(__name__)

Listener = Callable[[dict], None]
SyncEvent = ConversationUpdatedEvent | MessageFailedEvent | ConnectionChangedEvent | UnreadChangedEvent


class EventPublisher:
    """Fans events out to registered listeners and an optional queue

    Publishing is synchronous so observers see optimistic state before the
    caller suspends on network I/O.
    """

    def __init__(self, queue: asyncio.Queue[dict] | None = None) -> None:
        self.queue = queue
        self.listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        if listener not in self.listeners:
            self.listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def publish(self, event: SyncEvent | dict) -> None:
        """Publish an event (accepts dataclass or dict)"""
        # Convert dataclass to dict manually so message lists stay as Message objects
        if isinstance(event, ConversationUpdatedEvent):
            event_dict = {
                "type": event.type,
                "counterpart_id": event.counterpart_id,
                "messages": list(event.messages),
                "unread_count": event.unread_count,
                "autoscroll": event.autoscroll,
                "unseen_count": event.unseen_count,
            }
        elif isinstance(event, MessageFailedEvent):
            event_dict = {
                "type": event.type,
                "counterpart_id": event.counterpart_id,
                "client_id": event.client_id,
                "content": event.content,
                "error": event.error,
            }
        elif isinstance(event, ConnectionChangedEvent):
            event_dict = {
                "type": event.type,
                "state": event.state,
            }
        elif isinstance(event, UnreadChangedEvent):
            event_dict = {
                "type": event.type,
                "counterpart_id": event.counterpart_id,
                "unread_count": event.unread_count,
                "total_unread": event.total_unread,
            }
        else:
            event_dict = event

        if self.queue is not None:
            self.queue.put_nowait(event_dict)

        for listener in list(self.listeners):
            try:
                listener(event_dict)
            except Exception:
                logger.exception("Listener failed handling %s event", event_dict.get("type"))
