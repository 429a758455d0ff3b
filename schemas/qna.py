from pydantic import BaseModel, Field, field_validator
from typing import Optional

from constants import ANSWER_MAX_LENGTH, POLL_TITLE_MAX_LENGTH, TIME_LIMIT_MAX_SECONDS
from schemas.common import InteractionStatus, generate_entity_id, utc_now


class Answer(BaseModel):
    participant_id: str
    participant_name: str
    text: str

class Qna(BaseModel):
    id: str
    room_id: str
    status: InteractionStatus = InteractionStatus.PENDING
    title: str
    time_limit_seconds: int = 0
    is_public: bool = True
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    # Filled in when the qna is closed
    answers: Optional[list[Answer]] = None

class CreateQnaRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=POLL_TITLE_MAX_LENGTH)
    time_limit_seconds: int = Field(0, ge=0, le=TIME_LIMIT_MAX_SECONDS)
    is_public: bool = True

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Qna title must not be blank")
        return value

class AnswerRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=ANSWER_MAX_LENGTH)

    @field_validator("text")
    @classmethod
    def strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Answer must not be blank")
        return value

class AnswerCount(BaseModel):
    count: int


def new_qna(room_id: str, request: CreateQnaRequest) -> Qna:
    now = utc_now().isoformat()
    return Qna(
        id=generate_entity_id(),
        room_id=room_id,
        status=InteractionStatus.PENDING,
        title=request.title,
        time_limit_seconds=request.time_limit_seconds,
        is_public=request.is_public,
        created_at=now,
        updated_at=now,
    )
