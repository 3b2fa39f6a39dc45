"""Normalization of loosely-typed message payloads into domain Messages

REST DTOs and push events describe the same message with different shapes:
flat ``senderId`` or nested ``sender`` objects, ``id`` or ``messageId``,
``clientId`` or ``tempId``, ISO strings, epoch numbers or Jackson arrays for
timestamps. Everything is reduced to the strict Message shape here so the
sync engine never sees raw payloads.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from domain.constants import STATUS_SENT
from domain.errors import MalformedEventError
from domain.models import Message, Participant

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Epoch values above this are treated as milliseconds
_EPOCH_MILLIS_THRESHOLD = 100_000_000_000

_FRACTION = re.compile(r"\.(\d+)")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def coerce_user_id(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    if isinstance(value, dict):
        return coerce_user_id(value.get("id"))
    return None


def _participant_id(payload: dict, role: str) -> int | None:
    flat = coerce_user_id(payload.get(f"{role}Id"))
    if flat is not None:
        return flat
    return coerce_user_id(payload.get(role))


def normalize_participant(payload: dict, role: str) -> Participant | None:
    """Extract the sender or receiver Participant from a message payload

    Args:
        payload: Raw message payload
        role: "sender" or "receiver"
    """
    user_id = _participant_id(payload, role)
    if user_id is None:
        return None

    nested = payload.get(role) if isinstance(payload.get(role), dict) else {}
    name = payload.get(f"{role}Username") or nested.get("username") or nested.get("name") or ""
    role_tag = payload.get(f"{role}Role") or nested.get("role")
    avatar = payload.get(f"{role}Avatar") or nested.get("avatar") or nested.get("profilePicture")

    return Participant(
        id=user_id,
        name=str(name),
        role=str(role_tag) if role_tag else None,
        avatar=str(avatar) if avatar else None,
    )


def parse_timestamp(value: Any, clock: Clock = utc_now) -> datetime:
    """Parse a payload timestamp into a timezone-aware UTC datetime

    Missing timestamps fall back to the local clock. Naive values are UTC.
    """
    if value is None or value == "":
        return clock()

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise MalformedEventError(f"Invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise MalformedEventError(f"Invalid timestamp: {value!r}") from e
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # fromisoformat only takes 3 or 6 fraction digits before 3.11
        text = _FRACTION.sub(lambda m: "." + m.group(1).ljust(6, "0")[:6], text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise MalformedEventError(f"Invalid timestamp: {value!r}") from e
    elif isinstance(value, (list, tuple)):
        # Jackson LocalDateTime array: [year, month, day, hour, minute, second, nanos]
        try:
            parts = [int(part) for part in value]
            nanos = parts[6] if len(parts) > 6 else 0
            parsed = datetime(*parts[:6], microsecond=nanos // 1000)
        except (TypeError, ValueError) as e:
            raise MalformedEventError(f"Invalid timestamp: {value!r}") from e
    else:
        raise MalformedEventError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_message(payload: Any, clock: Clock = utc_now) -> Message:
    """Convert a raw payload into a Message

    Raises:
        MalformedEventError: sender, receiver or content is missing or invalid
    """
    if not isinstance(payload, dict):
        raise MalformedEventError(f"Message payload must be an object, got {type(payload).__name__}")

    sender_id = _participant_id(payload, "sender")
    receiver_id = _participant_id(payload, "receiver")
    if sender_id is None:
        raise MalformedEventError("Message payload has no sender id")
    if receiver_id is None:
        raise MalformedEventError("Message payload has no receiver id")

    content = payload.get("content")
    if not isinstance(content, str):
        raise MalformedEventError("Message payload has no content")

    message_id = payload.get("id")
    if message_id is None or message_id == "":
        message_id = payload.get("messageId")
    if message_id == "":
        message_id = None

    client_id = payload.get("clientId") or payload.get("tempId") or None
    read = payload.get("read")
    task_id = payload.get("taskId")

    return Message(
        id=message_id,
        client_id=str(client_id) if client_id is not None else None,
        sender_id=sender_id,
        receiver_id=receiver_id,
        content=content,
        timestamp=parse_timestamp(payload.get("timestamp"), clock),
        read=read if isinstance(read, bool) else False,
        status=STATUS_SENT,
        task_id=task_id if isinstance(task_id, int) and not isinstance(task_id, bool) else None,
        task_title=payload.get("taskTitle"),
        sender=normalize_participant(payload, "sender"),
        receiver=normalize_participant(payload, "receiver"),
    )


def normalize_messages(payloads: Iterable[Any], clock: Clock = utc_now) -> list[Message]:
    """Normalize a list of payloads, dropping malformed entries with a log"""
    messages: list[Message] = []
    for payload in payloads:
        try:
            messages.append(normalize_message(payload, clock))
        except MalformedEventError as e:
            logger.warning("Discarding malformed message payload: %s", e)
    return messages
