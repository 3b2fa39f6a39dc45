"""STOMP-over-WebSocket handling for the reference backend"""
import logging
import uuid
from fastapi import WebSocket, WebSocketDisconnect

from domain.constants import DESTINATION_SEND, TOPIC_MESSAGES
from domain.errors import MalformedEventError, StompFrameError
from database.chat_database import ChatDatabase
from transport.normalizer import coerce_user_id
from transport.stomp import StompFrame, error_frame, parse_frame
from websocket.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


def parse_bearer_user_id(authorization: str | None) -> int | None:
    """Development identity scheme: the bearer token is the numeric user id"""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return coerce_user_id(authorization[len("Bearer "):].strip())


def parse_send_payload(frame: StompFrame, user_id: int) -> tuple[int, str, str | None]:
    """Extract (receiver_id, content, client_id) from a SEND frame body

    The sender is always the authenticated session user.
    """
    payload = frame.json_body()
    if not isinstance(payload, dict):
        raise MalformedEventError("SEND body must be a JSON object")

    sender_id = coerce_user_id(payload.get("sender", payload.get("senderId")))
    if sender_id is not None and sender_id != user_id:
        raise MalformedEventError(f"Sender {sender_id} does not match session user {user_id}")

    receiver_id = coerce_user_id(payload.get("receiver", payload.get("receiverId")))
    if receiver_id is None:
        raise MalformedEventError("SEND body has no receiver")

    content = payload.get("content")
    if not isinstance(content, str) or not content.strip():
        raise MalformedEventError("SEND body has no content")

    client_id = payload.get("clientId")
    return receiver_id, content.strip(), str(client_id) if client_id else None


async def fanout_message(message: dict, connection_manager: ConnectionManager) -> None:
    """Deliver a saved message DTO to the receiver's and the sender's topics"""
    receiver_topic = TOPIC_MESSAGES.format(user_id=message["receiverId"])
    sender_topic = TOPIC_MESSAGES.format(user_id=message["senderId"])
    await connection_manager.send_to_destination(receiver_topic, message)
    if sender_topic != receiver_topic:
        await connection_manager.send_to_destination(sender_topic, message)


async def send_error(websocket: WebSocket, message: str, detail: str = "") -> None:
    try:
        await websocket.send_text(error_frame(message, detail).encode())
    except Exception as e:
        logger.warning("Error sending error frame: %s", e)


async def send_receipt(websocket: WebSocket, frame: StompFrame) -> None:
    """Acknowledge a frame that asked for a receipt"""
    receipt = frame.headers.get("receipt")
    if receipt:
        await websocket.send_text(StompFrame("RECEIPT", {"receipt-id": receipt}).encode())


async def process_frame(
    websocket: WebSocket,
    frame: StompFrame,
    user_id: int | None,
    db: ChatDatabase,
    connection_manager: ConnectionManager,
) -> int | None:
    """Handle one client frame, returns the session user id (None until CONNECT)"""
    if frame.command in ("CONNECT", "STOMP"):
        user_id = parse_bearer_user_id(frame.headers.get("Authorization"))
        if user_id is None:
            user_id = coerce_user_id(frame.headers.get("userId"))
        if user_id is None:
            await send_error(websocket, "Authentication required")
            return None
        connected = StompFrame("CONNECTED", {
            "version": "1.1",
            "heart-beat": "0,0",
            "session": f"session-{uuid.uuid4()}",
            "user-name": str(user_id),
        })
        await websocket.send_text(connected.encode())
        logger.info("User %s connected. Total clients: %s", user_id, connection_manager.get_connection_count())
        return user_id

    if user_id is None:
        await send_error(websocket, "Not connected", f"{frame.command} before CONNECT")
        return None

    if frame.command == "SUBSCRIBE":
        destination = frame.headers.get("destination", "")
        if destination != TOPIC_MESSAGES.format(user_id=user_id):
            await send_error(websocket, "Forbidden destination", destination)
        else:
            connection_manager.subscribe(websocket, frame.headers.get("id", destination), destination)
    elif frame.command == "UNSUBSCRIBE":
        connection_manager.unsubscribe(websocket, frame.headers.get("id", ""))
    elif frame.command == "SEND":
        if frame.headers.get("destination") != DESTINATION_SEND:
            await send_error(websocket, "Unknown destination", frame.headers.get("destination", ""))
            return user_id
        try:
            receiver_id, content, client_id = parse_send_payload(frame, user_id)
        except MalformedEventError as e:
            # Send error but don't close connection - client can recover
            await send_error(websocket, "Invalid message", str(e))
            return user_id
        message = await db.save_message(user_id, receiver_id, content, client_id)
        await fanout_message(message, connection_manager)
    else:
        logger.debug("Ignoring %s frame from user %s", frame.command, user_id)
    return user_id


async def handle_websocket_connection(websocket: WebSocket, db: ChatDatabase, connection_manager: ConnectionManager) -> None:
    """Run one STOMP session over a WebSocket connection"""
    user_id: int | None = None
    await connection_manager.connect(websocket)

    try:
        while True:
            text = await websocket.receive_text()
            try:
                frame = parse_frame(text)
            except StompFrameError as e:
                await send_error(websocket, "Malformed frame", str(e))
                continue
            if frame is None:
                continue

            if frame.command == "DISCONNECT":
                await send_receipt(websocket, frame)
                await websocket.close()
                break

            user_id = await process_frame(websocket, frame, user_id, db, connection_manager)
            if user_id is not None:
                await send_receipt(websocket, frame)

    except WebSocketDisconnect:
        logger.info("User %s disconnected", user_id)
    except Exception:
        logger.exception("WebSocket error for user %s", user_id)
    finally:
        connection_manager.disconnect(websocket)
