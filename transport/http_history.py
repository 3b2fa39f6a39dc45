"""REST history adapter built on httpx"""
import logging
from typing import Generator

import httpx

from domain.constants import (
    ENDPOINT_RECEIVED,
    ENDPOINT_SENT,
    ENDPOINT_CONVERSATION,
    ENDPOINT_SEND,
    REQUEST_TIMEOUT_SECONDS,
)
from domain.errors import FetchError, MalformedEventError, SendError
from domain.models import Message, OutgoingEnvelope
from transport.normalizer import Clock, normalize_message, normalize_messages, utc_now

logger = logging.getLogger(__name__)


class BearerAuth(httpx.Auth):
    """Attaches the session bearer token to every request"""

    def __init__(self, token: str) -> None:
        self.token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if self.token:
            request.headers["Authorization"] = f"Bearer {self.token}"
        yield request


class HttpHistoryFetcher:
    """HistoryFetcher over the messages REST API

    Transport failures are translated into FetchError / SendError here so the
    sync engine never sees httpx exceptions.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.clock = clock
        self.client = httpx.AsyncClient(
            base_url=base_url,
            auth=BearerAuth(token),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "HttpHistoryFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def get_received(self) -> list[Message]:
        return await self._get_messages(ENDPOINT_RECEIVED)

    async def get_sent(self) -> list[Message]:
        return await self._get_messages(ENDPOINT_SENT)

    async def get_conversation(self, counterpart_id: int) -> list[Message]:
        return await self._get_messages(ENDPOINT_CONVERSATION.format(counterpart_id=counterpart_id))

    async def send_message(self, envelope: OutgoingEnvelope) -> Message:
        """POST a message and return the server-confirmed copy

        The request clientId is attached to the response so it can be matched
        to the optimistic entry even if the backend does not echo it.
        """
        try:
            response = await self.client.post(ENDPOINT_SEND, json=envelope.to_rest_body())
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise SendError(f"Send rejected with HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise SendError(f"Send failed: {e}") from e
        except ValueError as e:
            raise SendError(f"Send response is not JSON: {e}") from e

        if isinstance(payload, dict) and not (payload.get("clientId") or payload.get("tempId")):
            payload = {**payload, "clientId": envelope.client_id}
        try:
            return normalize_message(payload, self.clock)
        except MalformedEventError as e:
            raise SendError(f"Send response is malformed: {e}") from e

    async def _get_messages(self, path: str) -> list[Message]:
        try:
            response = await self.client.get(path)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(f"GET {path} failed with HTTP {e.response.status_code}", e.response.status_code) from e
        except httpx.RequestError as e:
            raise FetchError(f"GET {path} failed: {e}") from e
        except ValueError as e:
            raise FetchError(f"GET {path} returned invalid JSON: {e}") from e

        if not isinstance(payload, list):
            raise FetchError(f"GET {path} returned {type(payload).__name__}, expected a list")

        messages = normalize_messages(payload, self.clock)
        logger.debug("GET %s returned %d message(s)", path, len(messages))
        return messages
