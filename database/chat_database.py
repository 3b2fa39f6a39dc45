"""Database access layer for the reference message backend"""
from datetime import datetime, timezone

import aiosqlite

from config import Config

# Database path
DB_PATH = Config.DB_PATH

_MESSAGE_COLUMNS = """
    m.message_id, m.sender_id, s.username, s.role, m.receiver_id, r.username, r.role,
    m.content, m.client_id, m.is_read, m.created_at, m.task_id, m.task_title
"""

_MESSAGE_FROM = """
    FROM messages m
    LEFT JOIN users s ON s.user_id = m.sender_id
    LEFT JOIN users r ON r.user_id = m.receiver_id
"""


class ChatDatabase:
    """Manages SQLite storage for users and direct messages"""

    def __init__(self, db_path: str = DB_PATH) -> None:
        self.db_path = db_path
        self.conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Initialize database and create tables"""
        self.conn = await aiosqlite.connect(self.db_path)
        assert self.conn is not None

        await self.conn.execute("PRAGMA foreign_keys = ON")

        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                user_id INTEGER PRIMARY KEY,
                username TEXT NOT NULL DEFAULT '',
                role TEXT
            )
        """)

        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                sender_id INTEGER NOT NULL,
                receiver_id INTEGER NOT NULL,
                content TEXT NOT NULL,
                client_id TEXT,
                is_read INTEGER NOT NULL DEFAULT 0,
                task_id INTEGER,
                task_title TEXT,
                created_at TEXT NOT NULL
            )
        """)

        await self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_pair
            ON messages(sender_id, receiver_id, created_at)
        """)

        await self.conn.commit()

    async def close(self) -> None:
        """Close database connection"""
        if self.conn:
            await self.conn.close()

    async def upsert_user(self, user_id: int, username: str = "", role: str | None = None) -> None:
        """Register or rename a user so message DTOs carry display names"""
        assert self.conn is not None
        await self.conn.execute(
            """
            INSERT INTO users (user_id, username, role) VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET username = excluded.username, role = excluded.role
            """,
            (user_id, username, role),
        )
        await self.conn.commit()

    async def save_message(
        self,
        sender_id: int,
        receiver_id: int,
        content: str,
        client_id: str | None = None,
        task_id: int | None = None,
        task_title: str | None = None,
    ) -> dict:
        """Save a message and return its DTO"""
        assert self.conn is not None
        created_at = datetime.now(timezone.utc).isoformat()
        cursor = await self.conn.execute(
            """
            INSERT INTO messages (sender_id, receiver_id, content, client_id, task_id, task_title, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (sender_id, receiver_id, content, client_id, task_id, task_title, created_at),
        )
        await self.conn.commit()
        message = await self.get_message(cursor.lastrowid)
        assert message is not None
        return message

    async def get_message(self, message_id: int) -> dict | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM} WHERE m.message_id = ?",
            (message_id,),
        )
        row = await cursor.fetchone()
        return self._to_dto(row) if row else None

    async def get_sent(self, user_id: int) -> list[dict]:
        return await self._query("WHERE m.sender_id = ?", (user_id,))

    async def get_received(self, user_id: int) -> list[dict]:
        return await self._query("WHERE m.receiver_id = ?", (user_id,))

    async def get_conversation(self, user_id: int, counterpart_id: int) -> list[dict]:
        """Messages exchanged between two users, oldest first"""
        return await self._query(
            "WHERE (m.sender_id = ? AND m.receiver_id = ?) OR (m.sender_id = ? AND m.receiver_id = ?)",
            (user_id, counterpart_id, counterpart_id, user_id),
        )

    async def mark_conversation_read(self, user_id: int, counterpart_id: int) -> int:
        """Mark messages from counterpart to user as read, returns rows updated"""
        assert self.conn is not None
        cursor = await self.conn.execute(
            "UPDATE messages SET is_read = 1 WHERE receiver_id = ? AND sender_id = ? AND is_read = 0",
            (user_id, counterpart_id),
        )
        await self.conn.commit()
        return cursor.rowcount

    async def _query(self, where: str, params: tuple) -> list[dict]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM} {where} ORDER BY m.created_at ASC, m.message_id ASC",
            params,
        )
        rows = await cursor.fetchall()
        return [self._to_dto(row) for row in rows]

    @staticmethod
    def _to_dto(row) -> dict:
        return {
            "messageId": row[0],
            "senderId": row[1],
            "senderUsername": row[2],
            "senderRole": row[3],
            "receiverId": row[4],
            "receiverUsername": row[5],
            "receiverRole": row[6],
            "content": row[7],
            "clientId": row[8],
            "read": bool(row[9]),
            "timestamp": row[10],
            "taskId": row[11],
            "taskTitle": row[12],
        }
