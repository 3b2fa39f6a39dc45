"""WebSocket connection management with STOMP topic subscriptions"""
import itertools
import logging
from fastapi import WebSocket

from transport.stomp import message_frame

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks WebSocket connections and which topics each one subscribed to"""

    def __init__(self) -> None:
        """Initialize connection manager with no connections"""
        self.active_connections: list[WebSocket] = []
        # destination -> {websocket: subscription id}
        self.subscriptions: dict[str, dict[WebSocket, str]] = {}
        self._message_ids = itertools.count(1)

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and track a new WebSocket connection"""
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection and all of its subscriptions"""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        for destination in list(self.subscriptions):
            subscribers = self.subscriptions[destination]
            subscribers.pop(websocket, None)
            if not subscribers:
                del self.subscriptions[destination]

    def subscribe(self, websocket: WebSocket, subscription_id: str, destination: str) -> None:
        self.subscriptions.setdefault(destination, {})[websocket] = subscription_id

    def unsubscribe(self, websocket: WebSocket, subscription_id: str) -> None:
        for destination in list(self.subscriptions):
            subscribers = self.subscriptions[destination]
            if subscribers.get(websocket) == subscription_id:
                del subscribers[websocket]
            if not subscribers:
                del self.subscriptions[destination]

    async def send_to_destination(self, destination: str, payload: dict) -> int:
        """Send a MESSAGE frame to every subscriber of destination

        Returns:
            Number of subscribers the frame was delivered to
        """
        disconnected: list[WebSocket] = []
        delivered = 0

        for connection, subscription_id in list(self.subscriptions.get(destination, {}).items()):
            frame = message_frame(destination, subscription_id, str(next(self._message_ids)), payload)
            try:
                await connection.send_text(frame.encode())
                delivered += 1
            except Exception as e:
                logger.warning("Error sending message to client: %s", e)
                disconnected.append(connection)

        # Clean up disconnected clients
        for connection in disconnected:
            self.disconnect(connection)
        return delivered

    def get_connection_count(self) -> int:
        """Get the number of active connections"""
        return len(self.active_connections)

    def get_subscriber_count(self, destination: str) -> int:
        return len(self.subscriptions.get(destination, {}))
