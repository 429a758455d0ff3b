"""Chat log storage, reconnect replay and per-participant rate limiting.

Redis layout:
- ``room:{room_id}:chat``: sorted set, score = message timestamp (ms),
  member = message JSON. Capped at CHAT_MAX_MESSAGES, expires
  CHAT_TTL_SECONDS after the latest message.
- ``room:{room_id}:ratelimit:{channel}:{participant_id}``: sorted set of
  recent action timestamps, evaluated by a Lua sliding window.
"""
import json
import random
import string
import time
import uuid
from enum import Enum
from typing import Optional, Union

from redis.asyncio import Redis
from redis.exceptions import RedisError

from constants import (
    CHAT_MAX_MESSAGES,
    CHAT_RATE_LIMIT_MAX,
    CHAT_RATE_LIMIT_POLICY,
    CHAT_RATE_LIMIT_WINDOW_MS,
    CHAT_TTL_SECONDS,
    SYNC_RATE_LIMIT_MAX,
    SYNC_RATE_LIMIT_WINDOW_MS,
)
from logging_config import get_logger
from managers.base import check_pipeline_results
from redis_keys import REDIS_RATE_LIMIT_KEY, REDIS_ROOM_CHAT_KEY
from schemas.chat import ChatMessage

logger = get_logger(__name__)


class RateLimitPolicy(str, Enum):
    """What a rate-limit check answers when the store cannot be reached."""

    FAIL_OPEN = "open"
    FAIL_CLOSED = "closed"

    @classmethod
    def parse(cls, value: Union["RateLimitPolicy", str]) -> "RateLimitPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(repr(p.value) for p in cls)
            raise ValueError(f"Invalid rate limit policy {value!r}, expected one of {choices}") from None


# channel -> (max actions, window in ms)
RATE_LIMITS = {
    "chat": (CHAT_RATE_LIMIT_MAX, CHAT_RATE_LIMIT_WINDOW_MS),
    "sync": (SYNC_RATE_LIMIT_MAX, SYNC_RATE_LIMIT_WINDOW_MS),
}

# Evict, count, reject or record: all inside one script so concurrent sends cannot both pass
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window_start = tonumber(ARGV[2])
local max_count = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])
local member = ARGV[5]

redis.call('zremrangebyscore', key, '-inf', window_start)

local count = redis.call('zcard', key)
if count >= max_count then
  return 0
end

redis.call('zadd', key, now, member)
redis.call('expire', key, ttl)
return 1
"""


def now_ms() -> int:
    return int(time.time() * 1000)


def extract_timestamp(message_id: str) -> Optional[int]:
    """1706345678901-a1b2c3d4 -> 1706345678901"""
    try:
        return int(message_id.split("-", 1)[0])
    except (AttributeError, ValueError):
        return None


class ChatManager:
    def __init__(
        self,
        redis_client: Redis,
        max_messages: int = CHAT_MAX_MESSAGES,
        ttl_seconds: int = CHAT_TTL_SECONDS,
        rate_limit_policy: Union[RateLimitPolicy, str, None] = None,
    ):
        self.redis_client = redis_client
        self.max_messages = max_messages
        self.ttl_seconds = ttl_seconds
        self.rate_limit_policy = RateLimitPolicy.parse(rate_limit_policy or CHAT_RATE_LIMIT_POLICY)
        self._sliding_window = redis_client.register_script(SLIDING_WINDOW_SCRIPT)

    def get_chat_key(self, room_id: str) -> str:
        return REDIS_ROOM_CHAT_KEY.format(room_id=room_id)

    def get_rate_limit_key(self, room_id: str, participant_id: str, channel: str = "chat") -> str:
        return REDIS_RATE_LIMIT_KEY.format(room_id=room_id, channel=channel, participant_id=participant_id)

    def generate_message_id(self, timestamp: Optional[int] = None) -> str:
        """``{epochMillis}-{random}``: sorts by time, the suffix separates same-millisecond senders."""
        if timestamp is None:
            timestamp = now_ms()
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
        return f"{timestamp}-{suffix}"

    def create_message(self, sender_id: str, sender_name: str, text: str) -> ChatMessage:
        timestamp = now_ms()
        return ChatMessage(
            message_id=self.generate_message_id(timestamp),
            sender_id=sender_id,
            sender_name=sender_name,
            text=text,
            timestamp=timestamp,
        )

    async def save_message(self, room_id: str, message: ChatMessage):
        key = self.get_chat_key(room_id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {message.model_dump_json(): message.timestamp})
            # keep only the newest max_messages entries
            pipe.zremrangebyrank(key, 0, -(self.max_messages + 1))
            pipe.expire(key, self.ttl_seconds)
            results = await pipe.execute(raise_on_error=False)
        check_pipeline_results(results, "SaveMessage")
        logger.debug(f"[SaveMessage] {room_id} - {message.message_id}")

    async def send_message(self, room_id: str, sender_id: str, sender_name: str, text: str) -> Optional[ChatMessage]:
        """Rate-limit, stamp and store a message. Returns None when the sender is rate limited."""
        if not await self.check_rate_limit(room_id, sender_id):
            return None
        message = self.create_message(sender_id, sender_name, text)
        await self.save_message(room_id, message)
        logger.info(f"[Chat] {room_id} {sender_name}: {text[:20]}{'...' if len(text) > 20 else ''}")
        return message

    async def get_messages_after(self, room_id: str, last_message_id: str) -> list[ChatMessage]:
        """Messages strictly newer than ``last_message_id``, oldest first.

        An id without a readable timestamp replays the whole retained log.
        """
        last_timestamp = extract_timestamp(last_message_id)
        lower = "-inf" if last_timestamp is None else f"({last_timestamp}"
        raw_messages = await self.redis_client.zrangebyscore(self.get_chat_key(room_id), lower, "+inf")
        messages = [ChatMessage.model_validate(json.loads(raw)) for raw in raw_messages]
        logger.debug(f"[ChatSync] {room_id} - {len(messages)} messages after {last_message_id}")
        return messages

    async def get_recent_messages(self, room_id: str, limit: int = CHAT_MAX_MESSAGES) -> list[ChatMessage]:
        raw_messages = await self.redis_client.zrange(self.get_chat_key(room_id), -limit, -1)
        return [ChatMessage.model_validate(json.loads(raw)) for raw in raw_messages]

    async def check_rate_limit(self, room_id: str, participant_id: str, channel: str = "chat") -> bool:
        """Sliding-window check-and-record. True means the action is allowed."""
        max_count, window_ms = RATE_LIMITS[channel]
        key = self.get_rate_limit_key(room_id, participant_id, channel)
        now = now_ms()
        ttl = -(-window_ms // 1000)
        member = f"{now}-{uuid.uuid4().hex[:8]}"

        try:
            allowed = await self._sliding_window(keys=[key], args=[now, now - window_ms, max_count, ttl, member])
        except (RedisError, OSError) as e:
            allowed = self.rate_limit_policy == RateLimitPolicy.FAIL_OPEN
            logger.error(
                f"[RateLimit] Check failed for {participant_id} in {room_id} ({channel}), "
                f"policy={self.rate_limit_policy.value}, allowed={allowed}: {e}"
            )
            return allowed

        if not allowed:
            logger.warning(f"[RateLimit] {participant_id} ({room_id}) exceeded {max_count} {channel} actions per {window_ms}ms")
            return False
        return True

    async def check_sync_rate_limit(self, room_id: str, participant_id: str) -> bool:
        return await self.check_rate_limit(room_id, participant_id, channel="sync")

    async def clear_room(self, room_id: str):
        await self.redis_client.delete(self.get_chat_key(room_id))
