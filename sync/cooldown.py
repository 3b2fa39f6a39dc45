"""Send cooldown for a chat session using a sliding window"""
import time
from typing import Callable


class SendCooldown:
    """In-memory sliding-window limiter for messages sent from one session

    Lives in SessionState so the cooldown travels with the session instead of
    ambient storage.
    """

    def __init__(
        self,
        messages_per_window: int = 3,
        window_seconds: float = 1.0,
        cooldown_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize cooldown with configurable limits.

        Args:
            messages_per_window: Number of messages allowed in the window
            window_seconds: Time window in seconds
            cooldown_seconds: Cooldown period after exceeding limit
            clock: Monotonic time source, injectable for tests
        """
        self.MESSAGES_PER_WINDOW = messages_per_window
        self.WINDOW_SECONDS = window_seconds
        self.COOLDOWN_SECONDS = cooldown_seconds
        self.clock = clock

        self.timestamps: list[float] = []
        self.blocked_until: float | None = None

    def is_rate_limited(self) -> tuple[bool, str | None]:
        """
        Check the limit and record an attempt when allowed.

        Returns:
            (is_limited, error_message)
            - is_limited: True if the send should be refused
            - error_message: User-friendly error message or None if allowed
        """
        now = self.clock()

        if self.blocked_until is not None:
            if now < self.blocked_until:
                retry_after = int(self.blocked_until - now) + 1
                return True, f"Rate limited. Try again in {retry_after} second(s)."
            # Cooldown expired, reset
            self.blocked_until = None
            self.timestamps = []

        cutoff = now - self.WINDOW_SECONDS
        self.timestamps = [ts for ts in self.timestamps if ts > cutoff]

        if len(self.timestamps) < self.MESSAGES_PER_WINDOW:
            self.timestamps.append(now)
            return False, None

        self.blocked_until = now + self.COOLDOWN_SECONDS
        return True, f"Too many messages. Try again in {self.COOLDOWN_SECONDS} second(s)."

    def retry_after(self) -> float:
        """Seconds left in the active cooldown, 0 when not blocked"""
        if self.blocked_until is None:
            return 0.0
        return max(0.0, self.blocked_until - self.clock())

    def get_stats(self) -> dict:
        """Get current limiter stats (for monitoring)"""
        now = self.clock()
        cutoff = now - self.WINDOW_SECONDS
        valid_timestamps = [ts for ts in self.timestamps if ts > cutoff]
        is_blocked = self.blocked_until is not None and now < self.blocked_until

        return {
            "messages_in_window": len(valid_timestamps),
            "limit": self.MESSAGES_PER_WINDOW,
            "is_blocked": is_blocked,
            "blocked_until": self.blocked_until,
        }

    def reset(self) -> None:
        """Clear recorded attempts and any active cooldown"""
        self.timestamps = []
        self.blocked_until = None
