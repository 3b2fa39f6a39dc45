import os
from dotenv import load_dotenv

from domain import constants

load_dotenv()


class Config:
    # Client endpoints
    API_BASE_URL = os.getenv("CHAT_API_BASE_URL", "http://localhost:8080/api")
    WS_URL = os.getenv("CHAT_WS_URL", "ws://localhost:8080/ws")

    # Sync tuning
    RECONNECT_DELAY_SECONDS = float(os.getenv("CHAT_RECONNECT_DELAY_SECONDS", str(constants.RECONNECT_DELAY_SECONDS)))
    DEDUP_WINDOW_SECONDS = float(os.getenv("CHAT_DEDUP_WINDOW_SECONDS", str(constants.DEDUP_WINDOW_SECONDS)))
    CONNECT_TIMEOUT_SECONDS = float(os.getenv("CHAT_CONNECT_TIMEOUT_SECONDS", str(constants.CONNECT_TIMEOUT_SECONDS)))
    REQUEST_TIMEOUT_SECONDS = float(os.getenv("CHAT_REQUEST_TIMEOUT_SECONDS", str(constants.REQUEST_TIMEOUT_SECONDS)))

    # Send cooldown
    COOLDOWN_MESSAGES_PER_WINDOW = int(os.getenv("CHAT_COOLDOWN_MESSAGES_PER_WINDOW", "3"))
    COOLDOWN_WINDOW_SECONDS = float(os.getenv("CHAT_COOLDOWN_WINDOW_SECONDS", "1.0"))
    COOLDOWN_SECONDS = float(os.getenv("CHAT_COOLDOWN_SECONDS", "2.0"))

    # Reference server
    SERVER_HOST = os.getenv("CHAT_SERVER_HOST", "localhost")
    SERVER_PORT = int(os.getenv("CHAT_SERVER_PORT", "8080"))
    DB_PATH = os.getenv("CHAT_DB_PATH", "chat_history.db")

    LOG_LEVEL = os.getenv("CHAT_LOG_LEVEL", "INFO")
