"""Reference FastAPI backend - REST message endpoints plus STOMP over WebSocket"""
import logging
from contextlib import asynccontextmanager
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, WebSocket
from pydantic import BaseModel
import uvicorn

from config import Config
from database.chat_database import ChatDatabase
from websocket.connection_manager import ConnectionManager
from websocket.handler import fanout_message, handle_websocket_connection, parse_bearer_user_id

logger = logging.getLogger(__name__)


class MessageInput(BaseModel):
    receiverId: int
    content: str
    clientId: str | None = None
    taskId: int | None = None
    taskTitle: str | None = None


class UserInput(BaseModel):
    id: int
    username: str = ""
    role: str | None = None


def get_db(request: Request) -> ChatDatabase:
    return request.app.state.db


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connection_manager


def current_user_id(authorization: str | None = Header(default=None)) -> int:
    """Resolve the caller from the bearer token (development scheme: token is the user id)"""
    user_id = parse_bearer_user_id(authorization)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    return user_id


router = APIRouter(prefix="/api")


@router.get("/messages/sent")
async def get_sent(user_id: int = Depends(current_user_id), db: ChatDatabase = Depends(get_db)) -> list[dict]:
    return await db.get_sent(user_id)


@router.get("/messages/received")
async def get_received(user_id: int = Depends(current_user_id), db: ChatDatabase = Depends(get_db)) -> list[dict]:
    return await db.get_received(user_id)


@router.get("/messages/conversation/user-authenticated/{counterpart_id}")
async def get_conversation(
    counterpart_id: int,
    user_id: int = Depends(current_user_id),
    db: ChatDatabase = Depends(get_db),
) -> list[dict]:
    return await db.get_conversation(user_id, counterpart_id)


@router.post("/messages/send-authenticated")
async def send_authenticated(
    message_input: MessageInput,
    user_id: int = Depends(current_user_id),
    db: ChatDatabase = Depends(get_db),
    connection_manager: ConnectionManager = Depends(get_connection_manager),
) -> dict:
    content = message_input.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message content is required")
    message = await db.save_message(
        user_id,
        message_input.receiverId,
        content,
        message_input.clientId,
        message_input.taskId,
        message_input.taskTitle,
    )
    # Push the saved copy so open conversations see REST sends too
    await fanout_message(message, connection_manager)
    return message


@router.post("/messages/conversation/{counterpart_id}/read")
async def mark_read(
    counterpart_id: int,
    user_id: int = Depends(current_user_id),
    db: ChatDatabase = Depends(get_db),
) -> dict:
    updated = await db.mark_conversation_read(user_id, counterpart_id)
    return {"updated": updated}


@router.put("/users")
async def register_user(user: UserInput, db: ChatDatabase = Depends(get_db)) -> dict:
    await db.upsert_user(user.id, user.username, user.role)
    return user.model_dump()


def create_app(db_path: str = Config.DB_PATH) -> FastAPI:
    """Build the app with its own database and connection manager"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown"""
        await app.state.db.init()
        logger.info("Database initialized at %s", db_path)
        yield
        await app.state.db.close()
        logger.info("Application shutdown complete")

    app = FastAPI(lifespan=lifespan)
    app.state.db = ChatDatabase(db_path)
    app.state.connection_manager = ConnectionManager()
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """WebSocket endpoint that delegates to handler"""
        await handle_websocket_connection(websocket, app.state.db, app.state.connection_manager)

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=Config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=Config.SERVER_HOST, port=Config.SERVER_PORT)
