from pydantic import BaseModel, Field, field_validator
from typing import Optional

from constants import (
    POLL_MAX_OPTIONS,
    POLL_MIN_OPTIONS,
    POLL_OPTION_MAX_LENGTH,
    POLL_TITLE_MAX_LENGTH,
    TIME_LIMIT_MAX_SECONDS,
)
from schemas.common import InteractionStatus, generate_entity_id, utc_now


class Voter(BaseModel):
    id: str
    name: str

class PollOption(BaseModel):
    id: int
    value: str
    count: int = 0
    # Filled in when the poll is closed
    voters: list[Voter] = []

class Poll(BaseModel):
    id: str
    room_id: str
    status: InteractionStatus = InteractionStatus.PENDING
    title: str
    options: list[PollOption]
    time_limit_seconds: int = 0
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None

class CreatePollRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=POLL_TITLE_MAX_LENGTH)
    options: list[str] = Field(..., min_length=POLL_MIN_OPTIONS, max_length=POLL_MAX_OPTIONS)
    time_limit_seconds: int = Field(0, ge=0, le=TIME_LIMIT_MAX_SECONDS)

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Poll title must not be blank")
        return value

    @field_validator("options")
    @classmethod
    def check_options(cls, values: list[str]) -> list[str]:
        cleaned = [v.strip() for v in values]
        for option in cleaned:
            if not option:
                raise ValueError("Poll options must not be blank")
            if len(option) > POLL_OPTION_MAX_LENGTH:
                raise ValueError(f"Poll options must be at most {POLL_OPTION_MAX_LENGTH} characters")
        return cleaned

class VoteRequest(BaseModel):
    option_id: int = Field(..., ge=0)

class OptionCount(BaseModel):
    id: int
    count: int


def new_poll(room_id: str, request: CreatePollRequest) -> Poll:
    """Build a pending poll; option ids are the 0-based positions of the options."""
    now = utc_now().isoformat()
    return Poll(
        id=generate_entity_id(),
        room_id=room_id,
        status=InteractionStatus.PENDING,
        title=request.title,
        options=[PollOption(id=index, value=value, count=0) for index, value in enumerate(request.options)],
        time_limit_seconds=request.time_limit_seconds,
        created_at=now,
        updated_at=now,
    )
