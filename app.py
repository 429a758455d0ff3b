from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from pydantic import ValidationError
from redis.exceptions import RedisError
from routers.chat import chat_router
from routers.polls import polls_router
from routers.qna import qna_router
from routers.rooms import rooms_router
from backend import redis_backend
from errors import DuplicateSubmissionError, InteractionError, InvalidStateError, NotFoundError
from expiry import listen_for_expirations
from schemas.chat import SendChatRequest
import uuid
import json
import asyncio
from typing import Dict, Optional
from datetime import datetime
from logging_config import get_logger, setup_logging
from constants import LOG_FILE, LOG_LEVEL

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await redis_backend.connect()
    expiry_task = asyncio.create_task(listen_for_expirations(redis_backend))
    logger.info("Started expiry listener")
    yield
    expiry_task.cancel()
    try:
        await expiry_task
    except asyncio.CancelledError:
        pass
    except RedisError as e:
        logger.error(f"Expiry listener stopped with an error: {e}")
    await redis_backend.close()


app = FastAPI(lifespan=lifespan)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)

app.include_router(rooms_router)
app.include_router(polls_router)
app.include_router(qna_router)
app.include_router(chat_router)

logger.info("FastAPI application initialized")


@app.exception_handler(InteractionError)
async def interaction_error_handler(request: Request, exc: InteractionError):
    if isinstance(exc, NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})
    if isinstance(exc, (InvalidStateError, DuplicateSubmissionError)):
        return JSONResponse(status_code=409, content={"detail": str(exc)})
    # Store-level failures: details stay in the logs
    logger.error(f"{request.method} {request.url.path} failed: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal error, please retry"})


@app.exception_handler(RedisError)
async def redis_error_handler(request: Request, exc: RedisError):
    logger.error(f"{request.method} {request.url.path} failed on Redis: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal error, please retry"})


# In-memory connection tracking per room
# Format: {room_id: {connection_id: websocket}}
# Each instance tracks only its own sockets; Redis pub/sub fans events out across instances.
room_connections: Dict[str, Dict[str, WebSocket]] = {}

# Background tasks for Redis pub/sub listeners per room
# Format: {room_id: task}
room_pubsub_tasks: Dict[str, asyncio.Task] = {}


async def broadcast_local(room_id: str, payload: str):
    connections = room_connections.get(room_id, {})
    if not connections:
        return
    results = await asyncio.gather(*(ws.send_text(payload) for ws in connections.values()), return_exceptions=True)
    for conn_id, result in zip(list(connections), results):
        if isinstance(result, Exception):
            logger.warning(f"Error sending to connection {conn_id} in room {room_id}: {result}")
            connections.pop(conn_id, None)


async def listen_to_redis_channel(room_id: str):
    """Background task to listen for messages from Redis pub/sub and broadcast to local connections."""
    logger.info(f"Starting Redis pub/sub listener for room: {room_id}")
    pubsub = await redis_backend.subscribe_to_room(room_id)
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            logger.debug(f"Relaying event to {len(room_connections.get(room_id, {}))} local connections in room {room_id}")
            await broadcast_local(room_id, message["data"])
    except asyncio.CancelledError:
        logger.info(f"Redis listener task cancelled for room: {room_id}")
        raise
    except RedisError as e:
        logger.error(f"Error in Redis listener for room {room_id}: {e}", exc_info=True)
    finally:
        await pubsub.aclose()
        logger.debug(f"Closed pub/sub connection for room: {room_id}")
        room_pubsub_tasks.pop(room_id, None)


async def handle_socket_message(room_id: str, participant_id: str, display_name: str, websocket: WebSocket, data: str):
    """Chat sends and reconnect sync over the socket; everything else goes through the REST routes."""
    try:
        message = json.loads(data)
    except json.JSONDecodeError:
        # Plain text is a chat message
        message = {"type": "chat", "text": data}

    message_type = message.get("type")
    if message_type == "chat":
        try:
            request = SendChatRequest(text=message.get("text") or "")
        except ValidationError:
            await websocket.send_text(json.dumps({"type": "error", "code": "invalid_message"}))
            return
        chat_message = await redis_backend.chat.send_message(room_id, participant_id, display_name, request.text)
        if chat_message is None:
            await websocket.send_text(json.dumps({"type": "error", "code": "rate_limited"}))
            return
        await redis_backend.publish_message(room_id, {"type": "chat", "room_id": room_id, **chat_message.model_dump()})
    elif message_type == "sync":
        if not await redis_backend.chat.check_sync_rate_limit(room_id, participant_id):
            await websocket.send_text(json.dumps({"type": "error", "code": "rate_limited"}))
            return
        after = message.get("after")
        if after:
            messages = await redis_backend.chat.get_messages_after(room_id, after)
        else:
            messages = await redis_backend.chat.get_recent_messages(room_id)
        await websocket.send_text(json.dumps({"type": "sync", "messages": [m.model_dump() for m in messages]}))
    else:
        logger.debug(f"Ignoring socket message of type {message_type} in room {room_id}")


@app.websocket("/rooms/{room_id}/ws")
async def websocket_endpoint(room_id: str, websocket: WebSocket, participant_id: Optional[str] = None, display_name: Optional[str] = None):
    """Real-time channel of a room.

    Query parameters:
    - participant_id: id issued when joining the room; a random one is used when absent
    - display_name: Optional display name for the user
    """
    connection_id = str(uuid.uuid4())
    participant_id = participant_id or connection_id
    final_display_name = display_name.strip() if display_name and display_name.strip() else f"User_{participant_id[:8]}"

    await websocket.accept()
    logger.info(f"WebSocket connection accepted for room: {room_id}, participant: {participant_id}")

    room_connections.setdefault(room_id, {})[connection_id] = websocket
    if room_id not in room_pubsub_tasks or room_pubsub_tasks[room_id].done():
        room_pubsub_tasks[room_id] = asyncio.create_task(listen_to_redis_channel(room_id))
        # Give the listener a moment to subscribe to Redis channel
        await asyncio.sleep(0.1)

    try:
        await websocket.send_text(json.dumps({
            "type": "system",
            "message": "Connected to room",
            "room_id": room_id,
            "connection_id": connection_id,
            "timestamp": datetime.now().isoformat(),
        }))
        while True:
            data = await websocket.receive_text()
            try:
                await handle_socket_message(room_id, participant_id, final_display_name, websocket, data)
            except (InteractionError, RedisError) as e:
                logger.error(f"Error handling message from {connection_id} in room {room_id}: {e}", exc_info=True)
                await websocket.send_text(json.dumps({"type": "error", "code": "internal_error"}))
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection_id} in room {room_id}")
    finally:
        connections = room_connections.get(room_id, {})
        connections.pop(connection_id, None)
        if not connections:
            room_connections.pop(room_id, None)
            logger.info(f"No more local connections in room {room_id}, cleaning up")
            task = room_pubsub_tasks.pop(room_id, None)
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
