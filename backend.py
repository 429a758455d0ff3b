import json
from typing import Optional

import redis.asyncio as redis
from pydantic_core import to_jsonable_python

from constants import REDIS_DB, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT
from logging_config import get_logger
from managers.chat import ChatManager
from managers.polls import PollManager
from managers.qna import QnaManager
from redis_keys import REDIS_EXPIRED_CHANNEL, REDIS_ROOM_CHANNEL

logger = get_logger(__name__)


def create_redis_client() -> redis.Redis:
    return redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, db=REDIS_DB, decode_responses=True)


class RedisBackend:
    """Shared Redis connection, the interaction managers built on it, and room broadcast."""

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis_client = redis_client or create_redis_client()
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        self.polls = PollManager(self.redis_client)
        self.qna = QnaManager(self.redis_client)
        self.chat = ChatManager(self.redis_client)

    async def connect(self):
        try:
            await self.redis_client.ping()
            logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise

    async def close(self):
        await self.redis_client.aclose()
        logger.info("Redis client closed")

    def get_room_channel_name(self, room_id: str) -> str:
        """Get the Redis pub/sub channel name for a room."""
        return REDIS_ROOM_CHANNEL.format(room_id=room_id)

    async def publish_message(self, room_id: str, message: dict):
        """Publish an event to the room's pub/sub channel; every instance relays it to its sockets."""
        channel = self.get_room_channel_name(room_id)
        subscribers = await self.redis_client.publish(channel, json.dumps(to_jsonable_python(message)))
        logger.debug(f"Published {message.get('type', 'unknown')} to room {room_id} channel {channel}, {subscribers} subscribers")
        return subscribers

    async def subscribe_to_room(self, room_id: str):
        """Create a pubsub subscriber for a room channel."""
        channel = self.get_room_channel_name(room_id)
        logger.debug(f"Subscribing to Redis channel {channel} for room {room_id}")
        pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(channel)
        return pubsub

    def expired_channel_name(self) -> str:
        return REDIS_EXPIRED_CHANNEL.format(db=REDIS_DB)

    async def clear_room_interactions(self, room_id: str):
        """Delete every poll, qna and the chat log of a room in one round trip."""
        async with self.redis_client.pipeline(transaction=True) as pipe:
            await self.polls.add_clear_to_pipeline(pipe, room_id)
            await self.qna.add_clear_to_pipeline(pipe, room_id)
            pipe.delete(self.chat.get_chat_key(room_id))
            await self.polls.execute_pipeline(pipe, "ClearRoom")
        logger.info(f"Cleared polls, qna and chat of room {room_id}")


redis_backend = RedisBackend()
