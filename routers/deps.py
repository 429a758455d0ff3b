from fastapi import Header
from pydantic import BaseModel
from typing import Optional

from backend import RedisBackend, redis_backend


class Participant(BaseModel):
    id: str
    name: str


def get_backend() -> RedisBackend:
    return redis_backend


def get_participant(
    x_participant_id: str = Header(..., description="Participant id issued when joining the room"),
    x_participant_name: Optional[str] = Header(None, description="Display name"),
) -> Participant:
    # Admission and identity are resolved upstream; the headers are trusted as-is
    name = x_participant_name.strip() if x_participant_name and x_participant_name.strip() else f"User_{x_participant_id[:8]}"
    return Participant(id=x_participant_id, name=name)
