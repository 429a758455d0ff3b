from fastapi import APIRouter, Depends

from backend import RedisBackend
from logging_config import get_logger
from routers.deps import get_backend
from routers.polls import list_polls
from routers.qna import list_qnas
from schemas.rooms import ClearRoomResponse, RoomInteractionsResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{room_id}/interactions", response_model=RoomInteractionsResponse)
async def get_room_interactions(room_id: str, backend: RedisBackend = Depends(get_backend)):
    """Everything a client needs to rebuild the room after (re)connecting."""
    polls = await list_polls(room_id, backend)
    qnas = await list_qnas(room_id, backend)
    messages = await backend.chat.get_recent_messages(room_id)
    logger.debug(f"Room {room_id} snapshot: {len(polls)} polls, {len(qnas)} qna, {len(messages)} messages")
    return RoomInteractionsResponse(room_id=room_id, polls=polls, qna=qnas, messages=messages)


@rooms_router.delete("/{room_id}/interactions", response_model=ClearRoomResponse)
async def clear_room_interactions(room_id: str, backend: RedisBackend = Depends(get_backend)):
    logger.info(f"Clearing interactions of room {room_id}")
    await backend.clear_room_interactions(room_id)
    await backend.publish_message(room_id, {"type": "system", "message": "Room interactions cleared", "room_id": room_id})
    return ClearRoomResponse(room_id=room_id, cleared=True)
