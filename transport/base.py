"""Capability interfaces the sync engine consumes"""
from typing import Callable, Protocol

from domain.constants import ConnectionState
from domain.models import Message, OutgoingEnvelope

EventCallback = Callable[[dict], None]
StateListener = Callable[[ConnectionState], None]


class HistoryFetcher(Protocol):
    """REST access to message history; every call raises FetchError or SendError on failure"""

    async def get_received(self) -> list[Message]: ...

    async def get_sent(self) -> list[Message]: ...

    async def get_conversation(self, counterpart_id: int) -> list[Message]: ...

    async def send_message(self, envelope: OutgoingEnvelope) -> Message: ...


class PushChannel(Protocol):
    """Persistent publish/subscribe connection delivering message events

    Delivery may duplicate or reorder events.
    """

    state: ConnectionState

    async def connect(self) -> ConnectionState: ...

    async def subscribe(self, user_id: int, on_event: EventCallback) -> None: ...

    async def publish(self, envelope: OutgoingEnvelope) -> None: ...

    async def disconnect(self) -> None: ...

    def add_state_listener(self, listener: StateListener) -> None: ...
