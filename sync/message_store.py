"""In-memory message store implementing the reconciliation merge rule"""
import bisect
from datetime import datetime, timedelta
from typing import Literal

from domain.constants import DEDUP_WINDOW_SECONDS, STATUS_PENDING, STATUS_SENT
from domain.models import Message

MergeOutcome = Literal["inserted", "updated", "unchanged"]


def _sort_key(message: Message) -> tuple[datetime, int]:
    return (message.timestamp, message.seq)


def _has_value(value) -> bool:
    return value is not None and value != ""


def same_id(a, b) -> bool:
    """Server ids compare as strings so 7 and "7" are the same message"""
    return _has_value(a) and _has_value(b) and str(a) == str(b)


def identity_compatible(existing: Message, incoming: Message) -> bool:
    """False when both messages carry different ids or different client ids"""
    if _has_value(existing.id) and _has_value(incoming.id) and not same_id(existing.id, incoming.id):
        return False
    if existing.client_id and incoming.client_id and existing.client_id != incoming.client_id:
        return False
    return True


class ConversationLog:
    """Ordered, de-duplicated messages of one conversation

    Messages stay sorted by (timestamp, arrival). Applying the same message
    twice, or applying push and REST copies in either order, converges to the
    same list.
    """

    def __init__(self, dedup_window: float | None = DEDUP_WINDOW_SECONDS) -> None:
        self.messages: list[Message] = []
        self.dedup_window = timedelta(seconds=dedup_window) if dedup_window is not None else None
        self._next_seq = 0

    def __len__(self) -> int:
        return len(self.messages)

    def snapshot(self) -> list[Message]:
        return list(self.messages)

    def find_by_id(self, message_id) -> Message | None:
        if not _has_value(message_id):
            return None
        for message in self.messages:
            if same_id(message.id, message_id):
                return message
        return None

    def find_by_client_id(self, client_id: str | None) -> Message | None:
        if not client_id:
            return None
        for message in self.messages:
            if message.client_id == client_id:
                return message
        return None

    def find_heuristic_match(self, incoming: Message) -> Message | None:
        """Same sender, receiver and content within the dedup window"""
        if self.dedup_window is None:
            return None
        for message in self.messages:
            if (
                message.sender_id == incoming.sender_id
                and message.receiver_id == incoming.receiver_id
                and message.content == incoming.content
                and abs(message.timestamp - incoming.timestamp) <= self.dedup_window
                and identity_compatible(message, incoming)
            ):
                return message
        return None

    def merge(self, incoming: Message) -> MergeOutcome:
        """Apply the merge rule for one incoming or fetched message"""
        existing = self.find_by_id(incoming.id)
        if existing is None:
            existing = self.find_by_client_id(incoming.client_id)
        if existing is None:
            existing = self.find_heuristic_match(incoming)

        if existing is not None:
            return "updated" if self._absorb(existing, incoming) else "unchanged"

        self._insert(incoming)
        return "inserted"

    def append_local(self, message: Message) -> None:
        """Insert an optimistic message without dedup, it is new by construction"""
        self._insert(message)

    def remove_client_id(self, client_id: str) -> Message | None:
        message = self.find_by_client_id(client_id)
        if message is not None:
            self.messages.remove(message)
        return message

    def mark_all_read(self) -> bool:
        changed = False
        for message in self.messages:
            if not message.read:
                message.read = True
                changed = True
        return changed

    def unread_count(self, current_user_id: int) -> int:
        return sum(1 for m in self.messages if not m.read and m.sender_id != current_user_id)

    def _insert(self, message: Message) -> None:
        message.seq = self._next_seq
        self._next_seq += 1
        bisect.insort(self.messages, message, key=_sort_key)

    def _absorb(self, existing: Message, incoming: Message) -> bool:
        """Fold an incoming copy into the existing entry, returns True if anything changed"""
        before = (
            existing.id, existing.client_id, existing.timestamp, existing.read,
            existing.status, existing.task_id, existing.task_title, existing.sender, existing.receiver,
        )

        if _has_value(incoming.id):
            if not _has_value(existing.id):
                # Authoritative id replaces the local placeholder clock
                existing.id = incoming.id
                existing.timestamp = incoming.timestamp
            else:
                existing.timestamp = min(existing.timestamp, incoming.timestamp)
        elif not _has_value(existing.id):
            existing.timestamp = min(existing.timestamp, incoming.timestamp)

        if not existing.client_id and incoming.client_id:
            existing.client_id = incoming.client_id
        existing.read = existing.read or incoming.read
        if existing.status == STATUS_PENDING and (_has_value(existing.id) or incoming.status == STATUS_SENT):
            existing.status = STATUS_SENT
        if existing.task_id is None:
            existing.task_id = incoming.task_id
        if existing.task_title is None:
            existing.task_title = incoming.task_title
        if existing.sender is None:
            existing.sender = incoming.sender
        if existing.receiver is None:
            existing.receiver = incoming.receiver

        after = (
            existing.id, existing.client_id, existing.timestamp, existing.read,
            existing.status, existing.task_id, existing.task_title, existing.sender, existing.receiver,
        )
        if before[2] != after[2]:
            self.messages.sort(key=_sort_key)
        return before != after


class MessageStore:
    """Conversation logs keyed by counterpart id for the current user"""

    def __init__(self, current_user_id: int, dedup_window: float | None = DEDUP_WINDOW_SECONDS) -> None:
        self.current_user_id = current_user_id
        self.dedup_window = dedup_window
        self.logs: dict[int, ConversationLog] = {}

    def log_for(self, counterpart_id: int) -> ConversationLog:
        if counterpart_id not in self.logs:
            self.logs[counterpart_id] = ConversationLog(self.dedup_window)
        return self.logs[counterpart_id]

    def merge(self, message: Message) -> tuple[int | None, MergeOutcome]:
        """Merge a message into its conversation

        Returns:
            (counterpart_id, outcome); counterpart_id is None when the message
            does not involve the current user and was ignored
        """
        counterpart_id = message.counterpart_id(self.current_user_id)
        if counterpart_id is None:
            return None, "unchanged"
        if message.sender_id == self.current_user_id:
            message.read = True
        return counterpart_id, self.log_for(counterpart_id).merge(message)

    def unread_count(self, counterpart_id: int) -> int:
        log = self.logs.get(counterpart_id)
        return log.unread_count(self.current_user_id) if log else 0

    def total_unread(self) -> int:
        return sum(log.unread_count(self.current_user_id) for log in self.logs.values())
