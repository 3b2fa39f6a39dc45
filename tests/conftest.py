"""Pytest configuration and shared fixtures for all tests"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from domain.constants import CONNECTION_CONNECTED, CONNECTION_DISCONNECTED
from domain.models import Participant, SessionState
from events.publisher import EventPublisher
from sync.conversation_sync import ConversationSync
from websocket.connection_manager import ConnectionManager
from database.chat_database import ChatDatabase
from factories import ClientIds, FakeClock

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture
def current_user():
    return Participant(id=1, name="Student")


@pytest.fixture
def counterpart():
    return Participant(id=9, name="Admin", role="admin")


@pytest.fixture
def session(current_user):
    return SessionState(current_user=current_user, token="1")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def history():
    """HistoryFetcher double with empty results"""
    fetcher = AsyncMock()
    fetcher.get_received.return_value = []
    fetcher.get_sent.return_value = []
    fetcher.get_conversation.return_value = []
    return fetcher


@pytest.fixture
def channel():
    """PushChannel double, disconnected by default"""
    push = MagicMock()
    push.state = CONNECTION_DISCONNECTED
    push.connect = AsyncMock(return_value=CONNECTION_CONNECTED)
    push.subscribe = AsyncMock()
    push.publish = AsyncMock()
    push.disconnect = AsyncMock()
    return push


@pytest.fixture
def published():
    """Every event published during the test, in order"""
    return []


@pytest.fixture
def publisher(published):
    publisher = EventPublisher()
    publisher.add_listener(published.append)
    return publisher


@pytest.fixture
def sync(session, history, channel, publisher, clock):
    return ConversationSync(
        session,
        history,
        channel,
        publisher=publisher,
        clock=clock,
        client_id_factory=ClientIds(),
    )


@pytest.fixture
async def in_memory_db():
    """Create an in-memory SQLite database for testing"""
    db = ChatDatabase(":memory:")
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def connection_manager():
    """Create a ConnectionManager instance for testing"""
    return ConnectionManager()


@pytest.fixture
def mock_websocket():
    """Create a mock WebSocket for testing"""
    ws = AsyncMock()
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    return ws
