from pydantic import BaseModel, Field, field_validator

from constants import CHAT_TEXT_MAX_LENGTH


class ChatMessage(BaseModel):
    message_id: str
    sender_id: str
    sender_name: str
    text: str
    timestamp: int # epoch milliseconds

class SendChatRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=CHAT_TEXT_MAX_LENGTH)

    @field_validator("text")
    @classmethod
    def strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message must not be blank")
        return value

class SendChatResponse(BaseModel):
    message_id: str
    timestamp: int

class SyncChatResponse(BaseModel):
    messages: list[ChatMessage]
