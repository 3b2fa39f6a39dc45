"""STOMP frame encoding and parsing for the push channel"""
import json
from dataclasses import dataclass, field

from domain.errors import StompFrameError

NULL = "\x00"
EOL = "\n"

# CONNECT and CONNECTED frames never escape header values
_UNESCAPED_COMMANDS = {"CONNECT", "CONNECTED", "STOMP"}

_ESCAPES = {"\\": "\\\\", "\r": "\\r", "\n": "\\n", ":": "\\c"}
_UNESCAPES = {"\\": "\\", "r": "\r", "n": "\n", "c": ":"}

CLIENT_COMMANDS = {"CONNECT", "STOMP", "SEND", "SUBSCRIBE", "UNSUBSCRIBE", "ACK", "NACK", "BEGIN", "COMMIT", "ABORT", "DISCONNECT"}
SERVER_COMMANDS = {"CONNECTED", "MESSAGE", "RECEIPT", "ERROR"}


@dataclass
class StompFrame:
    """A single STOMP frame"""
    command: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    def json_body(self):
        """Decode the body as JSON, raising StompFrameError on failure"""
        try:
            return json.loads(self.body)
        except json.JSONDecodeError as e:
            raise StompFrameError(f"{self.command} frame body is not JSON: {e}") from e

    def encode(self) -> str:
        escape = self.command not in _UNESCAPED_COMMANDS
        lines = [self.command]
        for name, value in self.headers.items():
            if escape:
                name, value = _escape(name), _escape(str(value))
            lines.append(f"{name}:{value}")
        return EOL.join(lines) + EOL + EOL + self.body + NULL


def _escape(value: str) -> str:
    return "".join(_ESCAPES.get(char, char) for char in value)


def _unescape(value: str) -> str:
    result: list[str] = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            result.append(char)
            continue
        nxt = next(chars, None)
        if nxt not in _UNESCAPES:
            raise StompFrameError(f"Invalid escape sequence in header: \\{nxt or ''}")
        result.append(_UNESCAPES[nxt])
    return "".join(result)


def is_heartbeat(text: str) -> bool:
    return text.strip("\r\n") == ""


def parse_frame(text: str) -> StompFrame | None:
    """Parse one STOMP frame, returns None for heart-beats

    Raises:
        StompFrameError: the text is not a well-formed frame
    """
    if is_heartbeat(text):
        return None

    # Leading EOLs are heart-beats that arrived ahead of the frame
    text = text.lstrip("\r\n")
    null_index = text.find(NULL)
    if null_index == -1:
        raise StompFrameError("Frame is not NULL-terminated")
    text = text[:null_index]

    head, separator, body = text.partition("\n\n")
    if not separator:
        head, separator, body = text.partition("\r\n\r\n")
    if not separator:
        raise StompFrameError("Frame has no header/body separator")

    lines = head.replace("\r\n", "\n").split("\n")
    command = lines[0].strip()
    if command not in CLIENT_COMMANDS and command not in SERVER_COMMANDS:
        raise StompFrameError(f"Unknown STOMP command: {command!r}")

    unescape = command not in _UNESCAPED_COMMANDS
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        name, colon, value = line.partition(":")
        if not colon:
            raise StompFrameError(f"Malformed header line: {line!r}")
        if unescape:
            name, value = _unescape(name), _unescape(value)
        # Repeated headers: the first occurrence wins
        headers.setdefault(name, value)

    return StompFrame(command=command, headers=headers, body=body)


def connect_frame(token: str, user_id: int, host: str = "/", heart_beat: str = "10000,10000") -> StompFrame:
    return StompFrame("CONNECT", {
        "accept-version": "1.1,1.0",
        "host": host,
        "heart-beat": heart_beat,
        "Authorization": f"Bearer {token}",
        "userId": str(user_id),
    })


def subscribe_frame(subscription_id: str, destination: str) -> StompFrame:
    return StompFrame("SUBSCRIBE", {"id": subscription_id, "destination": destination, "ack": "auto"})


def send_frame(destination: str, payload: dict) -> StompFrame:
    body = json.dumps(payload)
    return StompFrame("SEND", {
        "destination": destination,
        "content-type": "application/json",
        "content-length": str(len(body.encode("utf-8"))),
    }, body)


def message_frame(destination: str, subscription_id: str, message_id: str, payload: dict) -> StompFrame:
    body = json.dumps(payload)
    return StompFrame("MESSAGE", {
        "destination": destination,
        "subscription": subscription_id,
        "message-id": message_id,
        "content-type": "application/json",
    }, body)


def disconnect_frame(receipt: str | None = None) -> StompFrame:
    return StompFrame("DISCONNECT", {"receipt": receipt} if receipt else {})


def error_frame(message: str, detail: str = "") -> StompFrame:
    return StompFrame("ERROR", {"message": message}, detail)
