"""Unit tests for the STOMP WebSocket handler"""
import pytest
from unittest.mock import AsyncMock
from fastapi import WebSocketDisconnect

from domain.errors import MalformedEventError
from transport.stomp import StompFrame, connect_frame, parse_frame, send_frame, subscribe_frame
from websocket.handler import (
    fanout_message,
    handle_websocket_connection,
    parse_bearer_user_id,
    parse_send_payload,
    process_frame,
)


def sent_frames(websocket) -> list[StompFrame]:
    return [parse_frame(call.args[0]) for call in websocket.send_text.call_args_list]


def push_body(**overrides) -> dict:
    body = {"sender": {"id": 1}, "receiver": {"id": 9}, "content": "hi", "clientId": "client-1"}
    body.update(overrides)
    return body


@pytest.mark.unit
class TestParsing:
    """Test identity and payload parsing"""

    @pytest.mark.parametrize("header,expected", [
        ("Bearer 7", 7),
        ("Bearer  12 ", 12),
        ("Bearer abc", None),
        ("Basic 7", None),
        ("", None),
        (None, None),
    ])
    def test_parse_bearer_user_id(self, header, expected):
        assert parse_bearer_user_id(header) == expected

    def test_parse_push_body(self):
        frame = send_frame("/app/sendMessage", push_body(content="  hi  "))

        assert parse_send_payload(frame, 1) == (9, "hi", "client-1")

    def test_parse_flat_body_without_client_id(self):
        frame = send_frame("/app/sendMessage", {"receiverId": 9, "content": "hi"})

        assert parse_send_payload(frame, 1) == (9, "hi", None)

    @pytest.mark.parametrize("body", [
        push_body(sender={"id": 2}),
        push_body(receiver=None),
        push_body(content="   "),
        push_body(content=None),
    ])
    def test_invalid_bodies_raise(self, body):
        with pytest.raises(MalformedEventError):
            parse_send_payload(send_frame("/app/sendMessage", body), 1)

    def test_non_object_body_raises(self):
        with pytest.raises(MalformedEventError):
            parse_send_payload(StompFrame("SEND", {}, "[1, 2]"), 1)
        with pytest.raises(MalformedEventError):
            parse_send_payload(StompFrame("SEND", {}, "not json"), 1)


@pytest.mark.unit
class TestProcessFrame:
    """Test per-frame handling"""

    async def test_connect_replies_connected(self, mock_websocket, in_memory_db, connection_manager):
        user_id = await process_frame(mock_websocket, connect_frame("1", 1), None, in_memory_db, connection_manager)

        assert user_id == 1
        connected = sent_frames(mock_websocket)[0]
        assert connected.command == "CONNECTED"
        assert connected.headers["version"] == "1.1"
        assert connected.headers["user-name"] == "1"

    async def test_connect_falls_back_to_user_id_header(self, mock_websocket, in_memory_db, connection_manager):
        frame = StompFrame("CONNECT", {"userId": "5"})

        assert await process_frame(mock_websocket, frame, None, in_memory_db, connection_manager) == 5

    async def test_connect_without_identity(self, mock_websocket, in_memory_db, connection_manager):
        user_id = await process_frame(mock_websocket, StompFrame("CONNECT", {}), None, in_memory_db, connection_manager)

        assert user_id is None
        assert sent_frames(mock_websocket)[0].command == "ERROR"

    async def test_frame_before_connect(self, mock_websocket, in_memory_db, connection_manager):
        frame = subscribe_frame("sub-1", "/topic/messages/1")

        assert await process_frame(mock_websocket, frame, None, in_memory_db, connection_manager) is None
        assert sent_frames(mock_websocket)[0].headers["message"] == "Not connected"
        assert connection_manager.subscriptions == {}

    async def test_subscribe_own_topic(self, mock_websocket, in_memory_db, connection_manager):
        await process_frame(mock_websocket, subscribe_frame("sub-1", "/topic/messages/1"), 1, in_memory_db, connection_manager)

        assert connection_manager.subscriptions == {"/topic/messages/1": {mock_websocket: "sub-1"}}

    async def test_subscribe_foreign_topic_refused(self, mock_websocket, in_memory_db, connection_manager):
        await process_frame(mock_websocket, subscribe_frame("sub-1", "/topic/messages/2"), 1, in_memory_db, connection_manager)

        assert connection_manager.subscriptions == {}
        assert sent_frames(mock_websocket)[0].headers["message"] == "Forbidden destination"

    async def test_unsubscribe(self, mock_websocket, in_memory_db, connection_manager):
        connection_manager.subscribe(mock_websocket, "sub-1", "/topic/messages/1")

        await process_frame(mock_websocket, StompFrame("UNSUBSCRIBE", {"id": "sub-1"}), 1, in_memory_db, connection_manager)

        assert connection_manager.subscriptions == {}

    async def test_send_saves_and_fans_out(self, mock_websocket, in_memory_db, connection_manager):
        connection_manager.subscribe(mock_websocket, "sub-9", "/topic/messages/9")

        await process_frame(mock_websocket, send_frame("/app/sendMessage", push_body()), 1, in_memory_db, connection_manager)

        saved = await in_memory_db.get_conversation(1, 9)
        assert [(m["content"], m["clientId"]) for m in saved] == [("hi", "client-1")]
        delivered = sent_frames(mock_websocket)[0]
        assert delivered.command == "MESSAGE"
        assert delivered.json_body()["messageId"] == saved[0]["messageId"]

    async def test_invalid_send_keeps_session(self, mock_websocket, in_memory_db, connection_manager):
        frame = send_frame("/app/sendMessage", push_body(content=""))

        user_id = await process_frame(mock_websocket, frame, 1, in_memory_db, connection_manager)

        assert user_id == 1
        assert sent_frames(mock_websocket)[0].headers["message"] == "Invalid message"
        assert await in_memory_db.get_sent(1) == []

    async def test_send_to_unknown_destination(self, mock_websocket, in_memory_db, connection_manager):
        await process_frame(mock_websocket, send_frame("/app/other", push_body()), 1, in_memory_db, connection_manager)

        assert sent_frames(mock_websocket)[0].headers["message"] == "Unknown destination"
        assert await in_memory_db.get_sent(1) == []


@pytest.mark.unit
class TestFanout:
    """Test delivery to both participants"""

    async def test_fanout_reaches_sender_and_receiver(self, connection_manager, mock_websocket):
        receiver_ws = AsyncMock()
        connection_manager.subscribe(mock_websocket, "sub-1", "/topic/messages/1")
        connection_manager.subscribe(receiver_ws, "sub-9", "/topic/messages/9")

        await fanout_message({"senderId": 1, "receiverId": 9, "content": "hi"}, connection_manager)

        mock_websocket.send_text.assert_called_once()
        receiver_ws.send_text.assert_called_once()

    async def test_fanout_to_self_sends_once(self, connection_manager, mock_websocket):
        connection_manager.subscribe(mock_websocket, "sub-1", "/topic/messages/1")

        await fanout_message({"senderId": 1, "receiverId": 1, "content": "note"}, connection_manager)

        mock_websocket.send_text.assert_called_once()


@pytest.mark.unit
class TestHandleConnection:
    """Test the receive loop"""

    async def test_session_with_receipts(self, mock_websocket, in_memory_db, connection_manager):
        mock_websocket.receive_text.side_effect = [
            connect_frame("1", 1).encode(),
            "\n",
            StompFrame("SUBSCRIBE", {"id": "sub-1", "destination": "/topic/messages/1", "receipt": "r-1"}).encode(),
            StompFrame("DISCONNECT", {"receipt": "r-2"}).encode(),
        ]

        await handle_websocket_connection(mock_websocket, in_memory_db, connection_manager)

        frames = sent_frames(mock_websocket)
        assert [f.command for f in frames] == ["CONNECTED", "RECEIPT", "RECEIPT"]
        assert [f.headers["receipt-id"] for f in frames[1:]] == ["r-1", "r-2"]
        mock_websocket.close.assert_awaited_once()
        assert connection_manager.get_connection_count() == 0
        assert connection_manager.subscriptions == {}

    async def test_malformed_frame_gets_error(self, mock_websocket, in_memory_db, connection_manager):
        mock_websocket.receive_text.side_effect = ["NOT A FRAME", WebSocketDisconnect()]

        await handle_websocket_connection(mock_websocket, in_memory_db, connection_manager)

        assert sent_frames(mock_websocket)[0].headers["message"] == "Malformed frame"
        assert connection_manager.get_connection_count() == 0

    async def test_client_disconnect_cleans_up(self, mock_websocket, in_memory_db, connection_manager):
        mock_websocket.receive_text.side_effect = [
            connect_frame("1", 1).encode(),
            subscribe_frame("sub-1", "/topic/messages/1").encode(),
            WebSocketDisconnect(),
        ]

        await handle_websocket_connection(mock_websocket, in_memory_db, connection_manager)

        assert connection_manager.subscriptions == {}
        mock_websocket.close.assert_not_awaited()
