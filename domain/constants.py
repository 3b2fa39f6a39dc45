"""Domain constants and type aliases"""
from typing import Literal

# Type aliases for connection, message and event types
ConnectionState = Literal["DISCONNECTED", "CONNECTING", "CONNECTED"]
MessageStatus = Literal["pending", "sent", "failed"]
EventType = Literal["conversation_updated", "message_failed", "connection_changed", "unread_changed"]
DeliveryTransport = Literal["push", "rest"]

# Connection state constants
CONNECTION_DISCONNECTED: ConnectionState = "DISCONNECTED"
CONNECTION_CONNECTING: ConnectionState = "CONNECTING"
CONNECTION_CONNECTED: ConnectionState = "CONNECTED"

# Message status constants
STATUS_PENDING: MessageStatus = "pending"
STATUS_SENT: MessageStatus = "sent"
STATUS_FAILED: MessageStatus = "failed"

# Event type constants
EVENT_TYPE_CONVERSATION_UPDATED: EventType = "conversation_updated"
EVENT_TYPE_MESSAGE_FAILED: EventType = "message_failed"
EVENT_TYPE_CONNECTION_CHANGED: EventType = "connection_changed"
EVENT_TYPE_UNREAD_CHANGED: EventType = "unread_changed"

# Delivery transport constants
TRANSPORT_PUSH: DeliveryTransport = "push"
TRANSPORT_REST: DeliveryTransport = "rest"

# REST endpoints (relative to the API base URL)
ENDPOINT_RECEIVED = "/messages/received"
ENDPOINT_SENT = "/messages/sent"
ENDPOINT_CONVERSATION = "/messages/conversation/user-authenticated/{counterpart_id}"
ENDPOINT_SEND = "/messages/send-authenticated"

# Push channel destinations
WS_PATH = "/ws"
TOPIC_MESSAGES = "/topic/messages/{user_id}"
TOPIC_MESSAGES_PREFIX = "/topic/messages/"
DESTINATION_SEND = "/app/sendMessage"

# Sync tuning
DEDUP_WINDOW_SECONDS = 5.0
RECONNECT_DELAY_SECONDS = 5.0
CONNECT_TIMEOUT_SECONDS = 10.0
REQUEST_TIMEOUT_SECONDS = 30.0
