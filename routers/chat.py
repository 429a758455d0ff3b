from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional

from backend import RedisBackend
from logging_config import get_logger
from routers.deps import Participant, get_backend, get_participant
from schemas.chat import SendChatRequest, SendChatResponse, SyncChatResponse

logger = get_logger(__name__)

chat_router = APIRouter(prefix="/rooms/{room_id}/chat", tags=["chat"])


@chat_router.post("/", response_model=SendChatResponse)
async def send_chat(
    room_id: str,
    request: SendChatRequest,
    participant: Participant = Depends(get_participant),
    backend: RedisBackend = Depends(get_backend),
):
    message = await backend.chat.send_message(room_id, participant.id, participant.name, request.text)
    if message is None:
        raise HTTPException(status_code=429, detail="Too many messages, slow down")

    await backend.publish_message(room_id, {"type": "chat", "room_id": room_id, **message.model_dump()})
    return SendChatResponse(message_id=message.message_id, timestamp=message.timestamp)


@chat_router.get("/", response_model=SyncChatResponse)
async def sync_chat(
    room_id: str,
    after: Optional[str] = Query(None, description="Last message id the client has seen"),
    participant: Participant = Depends(get_participant),
    backend: RedisBackend = Depends(get_backend),
):
    """Replay messages missed while disconnected, or the retained log when ``after`` is omitted."""
    if not await backend.chat.check_sync_rate_limit(room_id, participant.id):
        raise HTTPException(status_code=429, detail="Too many sync requests, slow down")

    if after:
        messages = await backend.chat.get_messages_after(room_id, after)
    else:
        messages = await backend.chat.get_recent_messages(room_id)
    logger.debug(f"Chat sync for {participant.id} in room {room_id}: {len(messages)} messages")
    return SyncChatResponse(messages=messages)
