"""Conversation synchronization: merges REST history, push events and local sends"""
import asyncio
import logging
import uuid
from typing import Any, Callable

from domain.constants import (
    ConnectionState,
    CONNECTION_CONNECTED,
    CONNECTION_DISCONNECTED,
    DEDUP_WINDOW_SECONDS,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    TRANSPORT_PUSH,
    TRANSPORT_REST,
)
from domain.errors import (
    FetchError,
    MalformedEventError,
    NoActiveCounterpartError,
    RateLimitedError,
    SendError,
    TransportDisconnect,
)
from domain.models import (
    Conversation,
    ConversationUpdatedEvent,
    ConnectionChangedEvent,
    Message,
    MessageFailedEvent,
    OutgoingEnvelope,
    Participant,
    PendingMessage,
    SessionState,
    UnreadChangedEvent,
)
from events.publisher import EventPublisher
from sync.message_store import MessageStore
from transport.base import HistoryFetcher, PushChannel
from transport.normalizer import Clock, normalize_message, utc_now

logger = logging.getLogger(__name__)


def new_client_id() -> str:
    return f"client-{uuid.uuid4()}"


class ConversationSync:
    """Keeps one de-duplicated, time-ordered timeline per counterpart

    All state is mutated from the event loop thread through send(),
    on_incoming() and reconcile(); observers receive events through the
    EventPublisher and never mutate the store.
    """

    def __init__(
        self,
        session: SessionState,
        history: HistoryFetcher,
        channel: PushChannel | None = None,
        publisher: EventPublisher | None = None,
        dedup_window: float | None = DEDUP_WINDOW_SECONDS,
        clock: Clock = utc_now,
        client_id_factory: Callable[[], str] = new_client_id,
    ) -> None:
        self.session = session
        self.history = history
        self.channel = channel
        self.publisher = publisher or EventPublisher()
        self.clock = clock
        self.client_id_factory = client_id_factory

        self.store = MessageStore(session.current_user.id, dedup_window)
        self.participants: dict[int, Participant] = {session.current_user.id: session.current_user}
        self.active_counterpart: Participant | None = None
        self.connection_state: ConnectionState = channel.state if channel is not None else CONNECTION_DISCONNECTED
        self.subscribed = False

        # Scroll bookkeeping for the active conversation
        self.at_bottom = True
        self.unseen_count = 0

    @property
    def current_user(self) -> Participant:
        return self.session.current_user

    # Lifecycle

    async def start(self) -> ConnectionState:
        """Connect the push channel and subscribe to the current user's topic"""
        if self.channel is None:
            return self.connection_state
        self.channel.add_state_listener(self.on_connection_state)
        await self._ensure_subscribed()
        return await self.channel.connect()

    async def stop(self) -> None:
        """Tear down the push session; merged state is kept"""
        if self.channel is not None:
            await self.channel.disconnect()
        self.subscribed = False
        self.on_connection_state(CONNECTION_DISCONNECTED)

    def on_connection_state(self, state: ConnectionState) -> None:
        if state == self.connection_state:
            return
        logger.info("Connection state %s -> %s", self.connection_state, state)
        self.connection_state = state
        self.publisher.publish(ConnectionChangedEvent(state=state))

    # Conversations

    async def open(self, counterpart: Participant) -> Conversation:
        """Make counterpart the active conversation and load its history

        Raises:
            FetchError: history could not be fetched; the conversation is still
                active and shows whatever was merged before
        """
        self.active_counterpart = counterpart
        self._remember(counterpart)
        self.unseen_count = 0
        self.at_bottom = True

        await self._ensure_subscribed()

        try:
            remote = await self.history.get_conversation(counterpart.id)
        except FetchError as e:
            logger.warning("Loading conversation with %s failed: %s", counterpart.id, e)
            self._mark_read(counterpart.id)
            self._notify_conversation(counterpart.id, autoscroll=True)
            raise

        for message in remote:
            self._apply(message)
        self._mark_read(counterpart.id)
        self._notify_conversation(counterpart.id, autoscroll=True)
        return self.conversation(counterpart.id)

    def conversation(self, counterpart_id: int) -> Conversation:
        log = self.store.log_for(counterpart_id)
        return Conversation(
            counterpart=self.participant(counterpart_id),
            messages=log.snapshot(),
            unread_count=self.store.unread_count(counterpart_id),
        )

    def conversations(self) -> list[Conversation]:
        """Every known conversation, most recent activity first"""
        previews = [self.conversation(cid) for cid, log in self.store.logs.items() if len(log)]
        return sorted(previews, key=lambda c: c.last_activity_at, reverse=True)

    def participant(self, user_id: int) -> Participant:
        return self.participants.get(user_id) or Participant(id=user_id)

    def unread_count(self, counterpart_id: int) -> int:
        return self.store.unread_count(counterpart_id)

    @property
    def total_unread(self) -> int:
        return self.store.total_unread()

    def mark_read(self, counterpart_id: int) -> None:
        if self._mark_read(counterpart_id):
            self._notify_conversation(counterpart_id)

    def set_scrolled_to_bottom(self, at_bottom: bool) -> None:
        self.at_bottom = at_bottom
        if at_bottom:
            self.unseen_count = 0

    # Sending

    async def send(self, counterpart: Participant | None, content: str) -> PendingMessage | None:
        """Send content with an optimistic local echo

        Returns None for empty content. Delivery failures are reported on the
        returned handle, not raised.

        Raises:
            NoActiveCounterpartError: no counterpart given and none is open
            RateLimitedError: the session cooldown is active
        """
        text = content.strip() if content else ""
        if not text:
            return None

        if counterpart is None:
            counterpart = self.active_counterpart
        if counterpart is None:
            raise NoActiveCounterpartError("No counterpart selected for send")

        cooldown = self.session.cooldown
        if cooldown is not None:
            limited, error = cooldown.is_rate_limited()
            if limited:
                raise RateLimitedError(error or "Rate limited", cooldown.retry_after())

        self._remember(counterpart)
        client_id = self.client_id_factory()
        message = Message(
            sender_id=self.current_user.id,
            receiver_id=counterpart.id,
            content=text,
            timestamp=self.clock(),
            client_id=client_id,
            read=True,
            status=STATUS_PENDING,
            sender=self.current_user,
            receiver=counterpart,
        )
        pending = PendingMessage(client_id=client_id, counterpart_id=counterpart.id, message=message)
        self.store.log_for(counterpart.id).append_local(message)
        self._notify_conversation(counterpart.id, autoscroll=True)

        await self._deliver(pending)
        return pending

    async def retry(self, pending: PendingMessage) -> PendingMessage:
        """Re-deliver a failed message with its original client id"""
        if pending.status != STATUS_FAILED:
            return pending

        log = self.store.log_for(pending.counterpart_id)
        stored = log.find_by_client_id(pending.client_id)
        if stored is not None:
            # The server kept the message despite the failure and its echo already arrived
            logger.info("Message %s was already delivered, not resending", pending.client_id)
            stored.status = STATUS_SENT
            pending.message = stored
            pending.error = None
            self._notify_conversation(pending.counterpart_id)
            return pending

        message = pending.message
        message.status = STATUS_PENDING
        message.timestamp = self.clock()
        pending.error = None
        pending.transport = None
        log.append_local(message)
        self._notify_conversation(pending.counterpart_id, autoscroll=True)

        await self._deliver(pending)
        return pending

    async def _deliver(self, pending: PendingMessage) -> None:
        message = pending.message
        envelope = OutgoingEnvelope(
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            content=message.content,
            client_id=pending.client_id,
        )

        if self.channel is not None and self.connection_state == CONNECTION_CONNECTED:
            try:
                await self.channel.publish(envelope)
            except TransportDisconnect as e:
                logger.warning("Push publish failed, falling back to REST: %s", e)
            else:
                pending.transport = TRANSPORT_PUSH
                if message.status == STATUS_PENDING:
                    message.status = STATUS_SENT
                    self._notify_conversation(pending.counterpart_id)
                return

        try:
            confirmed = await self.history.send_message(envelope)
        except SendError as e:
            self._fail(pending, e)
            return

        pending.transport = TRANSPORT_REST
        if not confirmed.client_id:
            confirmed.client_id = pending.client_id
        self._apply(confirmed, notify=True)
        # The confirmation may have matched another entry; the handle's message is delivered either way
        if message.status == STATUS_PENDING:
            message.status = STATUS_SENT
            self._notify_conversation(pending.counterpart_id)

    def _fail(self, pending: PendingMessage, error: SendError) -> None:
        logger.warning("Message %s to %s failed: %s", pending.client_id, pending.counterpart_id, error)
        pending.error = error
        pending.message.status = STATUS_FAILED
        self.store.log_for(pending.counterpart_id).remove_client_id(pending.client_id)
        self.publisher.publish(MessageFailedEvent(
            counterpart_id=pending.counterpart_id,
            client_id=pending.client_id,
            content=pending.message.content,
            error=str(error),
        ))
        self._notify_conversation(pending.counterpart_id)

    # Incoming

    def on_incoming(self, raw_event: Any) -> None:
        """Handle one push event; malformed events are logged and dropped"""
        try:
            message = normalize_message(raw_event, self.clock)
        except MalformedEventError as e:
            logger.warning("Discarding malformed push event: %s", e)
            return
        self._apply(message, notify=True)

    def reconcile(self, remote_messages: list[Message]) -> None:
        """Merge a REST refresh, notifying once per changed conversation"""
        changed: list[int] = []
        for message in remote_messages:
            counterpart_id = self._apply(message)
            if counterpart_id is not None and counterpart_id not in changed:
                changed.append(counterpart_id)
        for counterpart_id in changed:
            self._notify_conversation(counterpart_id)

    async def refresh(self) -> None:
        """Fetch sent and received lists concurrently and reconcile them

        Raises:
            FetchError: either list failed; the other one is still reconciled
        """
        results = await asyncio.gather(self.history.get_received(), self.history.get_sent(), return_exceptions=True)
        errors: list[FetchError] = []
        for result in results:
            if isinstance(result, FetchError):
                errors.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                self.reconcile(result)
        if errors:
            raise errors[0]

    def _apply(self, message: Message, notify: bool = False) -> int | None:
        """Merge one message; returns the counterpart id if the store changed"""
        self._remember(message.sender)
        self._remember(message.receiver)

        counterpart_id, outcome = self.store.merge(message)
        if counterpart_id is None:
            logger.warning(
                "Ignoring message %s between %s and %s, current user %s is not a participant",
                message.id, message.sender_id, message.receiver_id, self.current_user.id,
            )
            return None
        if outcome == "unchanged":
            return None

        inbound = message.sender_id != self.current_user.id
        is_active = self.active_counterpart is not None and self.active_counterpart.id == counterpart_id
        if outcome == "inserted" and inbound and is_active and not self.at_bottom:
            self.unseen_count += 1

        if notify:
            self._notify_conversation(counterpart_id, autoscroll=self.at_bottom or not inbound)
        return counterpart_id

    def _mark_read(self, counterpart_id: int) -> bool:
        return self.store.log_for(counterpart_id).mark_all_read()

    def _remember(self, participant: Participant | None) -> None:
        # First sighting wins, participants are immutable
        if participant is not None and participant.id not in self.participants:
            self.participants[participant.id] = participant

    async def _ensure_subscribed(self) -> None:
        if self.channel is None or self.subscribed:
            return
        await self.channel.subscribe(self.current_user.id, self.on_incoming)
        self.subscribed = True

    def _notify_conversation(self, counterpart_id: int, autoscroll: bool = False) -> None:
        unread = self.store.unread_count(counterpart_id)
        is_active = self.active_counterpart is not None and self.active_counterpart.id == counterpart_id
        if is_active:
            self.publisher.publish(ConversationUpdatedEvent(
                counterpart_id=counterpart_id,
                messages=self.store.log_for(counterpart_id).snapshot(),
                unread_count=unread,
                autoscroll=autoscroll,
                unseen_count=self.unseen_count,
            ))
        self.publisher.publish(UnreadChangedEvent(
            counterpart_id=counterpart_id,
            unread_count=unread,
            total_unread=self.store.total_unread(),
        ))
