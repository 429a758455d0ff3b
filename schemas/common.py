import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class InteractionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ENDED = "ended"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_entity_id() -> str:
    """Millisecond timestamp followed by random hex, so ids sort by creation time."""
    return f"{int(time.time() * 1000):013d}{uuid.uuid4().hex[:12]}"


class ActivityWindow(BaseModel):
    """Authoritative start and deadline of an active poll or qna."""

    started_at: str
    ended_at: Optional[str] = None
