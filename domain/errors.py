"""Error taxonomy for conversation synchronization"""


class ConversationSyncError(Exception):
    """Base class for every error raised by the sync engine and its adapters"""


class FetchError(ConversationSyncError):
    """A REST history call failed (network error or non-2xx response)"""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SendError(ConversationSyncError):
    """Message delivery failed on every available transport"""


class TransportDisconnect(ConversationSyncError):
    """The push channel is not connected or dropped mid-operation"""


class MalformedEventError(ConversationSyncError, ValueError):
    """A payload is missing required fields or carries unparseable values"""


class StompFrameError(MalformedEventError):
    """A STOMP frame could not be parsed"""


class NoActiveCounterpartError(ConversationSyncError, ValueError):
    """send() was called without a counterpart and no conversation is open"""


class RateLimitedError(ConversationSyncError, ValueError):
    """The session send cooldown is active"""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after
