from pydantic import BaseModel

from schemas.chat import ChatMessage
from schemas.polls import Poll
from schemas.qna import Qna


class RoomInteractionsResponse(BaseModel):
    room_id: str
    polls: list[Poll]
    qna: list[Qna]
    messages: list[ChatMessage]

class ClearRoomResponse(BaseModel):
    room_id: str
    cleared: bool
