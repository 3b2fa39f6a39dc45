"""STOMP-over-WebSocket push channel with fixed-delay reconnection"""
import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from domain.constants import (
    ConnectionState,
    CONNECTION_CONNECTED,
    CONNECTION_CONNECTING,
    CONNECTION_DISCONNECTED,
    CONNECT_TIMEOUT_SECONDS,
    DESTINATION_SEND,
    RECONNECT_DELAY_SECONDS,
    TOPIC_MESSAGES,
)
from domain.errors import StompFrameError, TransportDisconnect
from domain.models import OutgoingEnvelope
from transport.base import EventCallback, StateListener
from transport.stomp import (
    StompFrame,
    EOL,
    connect_frame,
    disconnect_frame,
    parse_frame,
    send_frame,
    subscribe_frame,
)

logger = logging.getLogger(__name__)

Connector = Callable[..., Any]

# Errors that mean the socket could not be opened or the handshake failed
_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException, StompFrameError)


@dataclass
class Subscription:
    id: str
    destination: str
    callback: EventCallback


def negotiate_heartbeat(client_send_ms: int, server_header: str | None) -> float | None:
    """Seconds between outgoing heart-beats, None when disabled

    The client sends at max(client cx, server sy) when both are non-zero.
    """
    if not server_header or client_send_ms <= 0:
        return None
    try:
        _, server_receive_ms = (int(part) for part in server_header.split(","))
    except ValueError:
        return None
    if server_receive_ms <= 0:
        return None
    return max(client_send_ms, server_receive_ms) / 1000


class StompPushChannel:
    """PushChannel speaking STOMP 1.1 over a websockets client connection

    A single per-user subscription is kept in a registry and re-sent after
    every reconnect. A dropped connection is retried after a fixed delay until
    disconnect() is called.
    """

    def __init__(
        self,
        url: str,
        token: str,
        user_id: int,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        heartbeat_ms: int = 10000,
        connector: Connector | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.user_id = user_id
        self.reconnect_delay = reconnect_delay
        self.connect_timeout = connect_timeout
        self.heartbeat_ms = heartbeat_ms
        self.connector = connector or websockets.connect

        self.state: ConnectionState = CONNECTION_DISCONNECTED
        self.session_id: str | None = None
        self.websocket: Any = None
        self.subscriptions: dict[str, Subscription] = {}
        self.state_listeners: list[StateListener] = []

        self._closing = False
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    def add_state_listener(self, listener: StateListener) -> None:
        if listener not in self.state_listeners:
            self.state_listeners.append(listener)

    async def connect(self) -> ConnectionState:
        """Open the socket and complete the STOMP handshake

        Failure is not raised: the channel stays DISCONNECTED and schedules a
        reconnect attempt.
        """
        if self.state != CONNECTION_DISCONNECTED:
            logger.debug("Push channel already %s", self.state)
            return self.state

        self._closing = False
        self._set_state(CONNECTION_CONNECTING)
        websocket = None
        try:
            websocket = await asyncio.wait_for(
                self.connector(self.url, additional_headers={"Authorization": f"Bearer {self.token}"}),
                self.connect_timeout,
            )
            await websocket.send(connect_frame(self.token, self.user_id, heart_beat=f"{self.heartbeat_ms},{self.heartbeat_ms}").encode())
            connected = await asyncio.wait_for(self._await_connected(websocket), self.connect_timeout)
        except _CONNECT_ERRORS as e:
            logger.warning("Push channel connect to %s failed: %s", self.url, e)
            if websocket is not None:
                await self._close_socket(websocket)
            self._set_state(CONNECTION_DISCONNECTED)
            self._schedule_reconnect()
            return self.state

        if self._closing:
            await self._close_socket(websocket)
            self._set_state(CONNECTION_DISCONNECTED)
            return self.state

        self.websocket = websocket
        self.session_id = connected.headers.get("session") or str(uuid.uuid4())
        logger.info("Push channel connected to %s (session %s)", self.url, self.session_id)
        self._set_state(CONNECTION_CONNECTED)

        for subscription in list(self.subscriptions.values()):
            if not await self._send_subscribe(subscription):
                return self.state

        self._reader_task = asyncio.create_task(self._read_loop(websocket))
        interval = negotiate_heartbeat(self.heartbeat_ms, connected.headers.get("heart-beat"))
        if interval:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(websocket, interval))
        return self.state

    async def subscribe(self, user_id: int, on_event: EventCallback) -> None:
        """Register the per-user topic, sending SUBSCRIBE now if connected"""
        destination = TOPIC_MESSAGES.format(user_id=user_id)
        if destination in self.subscriptions:
            logger.debug("Already subscribed to %s", destination)
            return

        subscription = Subscription(id=f"sub-{uuid.uuid4()}", destination=destination, callback=on_event)
        self.subscriptions[destination] = subscription
        if self.state == CONNECTION_CONNECTED:
            await self._send_subscribe(subscription)

    async def publish(self, envelope: OutgoingEnvelope) -> None:
        """Send a message envelope to the send destination

        Raises:
            TransportDisconnect: the channel is not connected or dropped while sending
        """
        websocket = self.websocket
        if self.state != CONNECTION_CONNECTED or websocket is None:
            raise TransportDisconnect("Push channel is not connected")
        try:
            await websocket.send(send_frame(DESTINATION_SEND, envelope.to_push_body()).encode())
        except ConnectionClosed as e:
            await self._handle_drop(websocket)
            raise TransportDisconnect(f"Push channel dropped while publishing: {e}") from e

    async def disconnect(self) -> None:
        """Close the session for good; no reconnect is attempted afterwards"""
        self._closing = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        websocket = self.websocket
        self.websocket = None
        await self._cancel_tasks()
        if websocket is not None:
            try:
                await websocket.send(disconnect_frame(receipt=f"disconnect-{uuid.uuid4()}").encode())
            except ConnectionClosed:
                logger.debug("Socket already closed before DISCONNECT")
            await self._close_socket(websocket)

        self.subscriptions.clear()
        self.session_id = None
        self._set_state(CONNECTION_DISCONNECTED)
        logger.info("Push channel disconnected from %s", self.url)

    async def _await_connected(self, websocket) -> StompFrame:
        while True:
            raw = await websocket.recv()
            frame = parse_frame(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
            if frame is None:
                continue
            if frame.command == "CONNECTED":
                return frame
            if frame.command == "ERROR":
                raise StompFrameError(f"Server refused STOMP connect: {frame.headers.get('message', frame.body)}")
            logger.debug("Ignoring %s frame before CONNECTED", frame.command)

    async def _send_subscribe(self, subscription: Subscription) -> bool:
        websocket = self.websocket
        if websocket is None:
            return False
        try:
            await websocket.send(subscribe_frame(subscription.id, subscription.destination).encode())
        except ConnectionClosed as e:
            logger.warning("Subscribe to %s failed: %s", subscription.destination, e)
            await self._handle_drop(websocket)
            return False
        logger.info("Subscribed to %s", subscription.destination)
        return True

    async def _read_loop(self, websocket) -> None:
        try:
            async for raw in websocket:
                text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
                try:
                    frame = parse_frame(text)
                except StompFrameError as e:
                    logger.warning("Discarding malformed STOMP frame: %s", e)
                    continue
                if frame is None:
                    continue
                if frame.command == "MESSAGE":
                    self._dispatch(frame)
                elif frame.command == "ERROR":
                    logger.error("STOMP error from server: %s", frame.headers.get("message", frame.body))
                    break
                else:
                    logger.debug("Received %s frame", frame.command)
        except ConnectionClosed as e:
            logger.warning("Push connection dropped: %s", e)
        await self._handle_drop(websocket)

    def _dispatch(self, frame: StompFrame) -> None:
        subscription = self._subscription_for(frame)
        if subscription is None:
            logger.warning("MESSAGE for unknown subscription %s", frame.headers.get("subscription"))
            return
        try:
            payload = frame.json_body()
        except StompFrameError as e:
            logger.warning("Discarding MESSAGE on %s: %s", subscription.destination, e)
            return
        try:
            subscription.callback(payload)
        except Exception:
            logger.exception("Subscriber for %s failed", subscription.destination)

    def _subscription_for(self, frame: StompFrame) -> Subscription | None:
        subscription_id = frame.headers.get("subscription")
        for subscription in self.subscriptions.values():
            if subscription.id == subscription_id:
                return subscription
        return self.subscriptions.get(frame.headers.get("destination", ""))

    async def _heartbeat_loop(self, websocket, interval: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                await websocket.send(EOL)
        except ConnectionClosed:
            logger.debug("Heart-beat stopped, connection closed")

    async def _handle_drop(self, websocket) -> None:
        if self.websocket is not websocket:
            return
        self.websocket = None
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        await self._close_socket(websocket)
        self._set_state(CONNECTION_DISCONNECTED)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        logger.info("Reconnecting push channel in %.1fs", self.reconnect_delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        if not self._closing:
            await self.connect()

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._reader_task, self._heartbeat_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reader_task = None
        self._heartbeat_task = None

    async def _close_socket(self, websocket) -> None:
        try:
            await websocket.close()
        except (OSError, WebSocketException) as e:
            logger.debug("Error closing socket: %s", e)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        for listener in list(self.state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connection state listener failed")
