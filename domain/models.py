"""Domain models for conversation synchronization"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from .constants import (
    ConnectionState,
    DeliveryTransport,
    EventType,
    MessageStatus,
    STATUS_SENT,
    CONNECTION_DISCONNECTED,
    EVENT_TYPE_CONVERSATION_UPDATED,
    EVENT_TYPE_MESSAGE_FAILED,
    EVENT_TYPE_CONNECTION_CHANGED,
    EVENT_TYPE_UNREAD_CHANGED,
)

if TYPE_CHECKING:
    from sync.cooldown import SendCooldown


@dataclass(frozen=True)
class Participant:
    """A user identity as seen in message payloads"""
    id: int
    name: str = ""
    role: str | None = None
    avatar: str | None = None


@dataclass
class Message:
    """A single chat line between two participants

    Fields:
    - id: server-assigned identifier, None until the server confirms the message
    - client_id: correlation token generated at send time
    - timestamp: timezone-aware UTC creation time (server or client clock)
    - status: pending until a transport accepts it, failed if every transport refused it
    - seq: arrival order inside a conversation, used to break timestamp ties
    """
    sender_id: int
    receiver_id: int
    content: str
    timestamp: datetime
    id: int | str | None = None
    client_id: str | None = None
    read: bool = False
    status: MessageStatus = STATUS_SENT
    task_id: int | None = None
    task_title: str | None = None
    sender: Participant | None = None
    receiver: Participant | None = None
    seq: int = field(default=0, repr=False, compare=False)

    def counterpart_id(self, current_user_id: int) -> int | None:
        """Id of the other participant relative to current_user_id, None if not involved"""
        if self.sender_id == current_user_id:
            return self.receiver_id
        if self.receiver_id == current_user_id:
            return self.sender_id
        return None


@dataclass
class Conversation:
    """Ordered messages between the current user and one counterpart"""
    counterpart: Participant
    messages: list[Message] = field(default_factory=list)
    unread_count: int = 0

    @property
    def last_activity_at(self) -> datetime | None:
        if not self.messages:
            return None
        return max(message.timestamp for message in self.messages)

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None


@dataclass
class OutgoingEnvelope:
    """Payload handed to a transport when sending a message"""
    sender_id: int
    receiver_id: int
    content: str
    client_id: str

    def to_push_body(self) -> dict:
        return {
            "sender": {"id": self.sender_id},
            "receiver": {"id": self.receiver_id},
            "content": self.content,
            "clientId": self.client_id,
        }

    def to_rest_body(self) -> dict:
        return {
            "receiverId": self.receiver_id,
            "content": self.content,
            "clientId": self.client_id,
        }


@dataclass
class PendingMessage:
    """Handle returned by send() that tracks one optimistic message"""
    client_id: str
    counterpart_id: int
    message: Message
    transport: DeliveryTransport | None = None
    error: Exception | None = None

    @property
    def status(self) -> MessageStatus:
        return self.message.status


@dataclass
class SessionState:
    """Explicit per-session state handed to the sync engine"""
    current_user: Participant
    token: str = ""
    cooldown: "SendCooldown | None" = None


@dataclass
class ConversationUpdatedEvent:
    """Event: the message list of a conversation changed"""
    type: EventType = EVENT_TYPE_CONVERSATION_UPDATED
    counterpart_id: int = 0
    messages: list[Message] = field(default_factory=list)
    unread_count: int = 0
    autoscroll: bool = False
    unseen_count: int = 0


@dataclass
class MessageFailedEvent:
    """Event: an optimistic message could not be delivered"""
    type: EventType = EVENT_TYPE_MESSAGE_FAILED
    counterpart_id: int = 0
    client_id: str = ""
    content: str = ""
    error: str = ""


@dataclass
class ConnectionChangedEvent:
    """Event: the push channel changed state"""
    type: EventType = EVENT_TYPE_CONNECTION_CHANGED
    state: ConnectionState = CONNECTION_DISCONNECTED


@dataclass
class UnreadChangedEvent:
    """Event: unread counters changed for a conversation"""
    type: EventType = EVENT_TYPE_UNREAD_CHANGED
    counterpart_id: int = 0
    unread_count: int = 0
    total_unread: int = 0
