"""Closes polls and qna whose activity flag expired, and broadcasts the results.

Relies on Redis keyspace notifications for expired keys (``notify-keyspace-events Ex``).
"""
import asyncio
from typing import Optional

from redis.exceptions import RedisError

from backend import RedisBackend
from constants import EXPIRY_RETRY_DELAY_SECONDS
from errors import InteractionError
from logging_config import get_logger

logger = get_logger(__name__)


async def enable_expiry_notifications(backend: RedisBackend) -> bool:
    try:
        await backend.redis_client.config_set("notify-keyspace-events", "Ex")
        return True
    except RedisError as e:
        # Managed Redis often forbids CONFIG; the setting must then be applied server-side
        logger.warning(f"Could not enable keyspace notifications, auto-close depends on server config: {e}")
        return False


async def handle_expired_key(backend: RedisBackend, key: str) -> Optional[dict]:
    """Close the poll/qna behind an expired activity flag and publish the final results.

    Returns the published event, or None when the key needed no action.
    """
    event = None
    if key.startswith(backend.polls.key_prefix):
        poll = await backend.polls.handle_expired_key(key)
        if poll:
            event = {"type": "poll_ended", "room_id": poll.room_id, "poll_id": poll.id, "options": poll.options}
    elif key.startswith(backend.qna.key_prefix):
        qna = await backend.qna.handle_expired_key(key)
        if qna:
            event = {"type": "qna_ended", "room_id": qna.room_id, "qna_id": qna.id, "answers": qna.answers or []}

    if event:
        await backend.publish_message(event["room_id"], event)
        logger.info(f"Auto-closed {event['type'].split('_')[0]} after expiry of {key}")
    return event


async def listen_for_expirations(backend: RedisBackend, retry_delay: float = EXPIRY_RETRY_DELAY_SECONDS):
    """Background task: consume expired-key events until cancelled.

    A dropped connection is logged and the subscription is re-established
    after ``retry_delay`` seconds.
    """
    channel = backend.expired_channel_name()
    while True:
        pubsub = backend.redis_client.pubsub(ignore_subscribe_messages=True)
        try:
            await enable_expiry_notifications(backend)
            await pubsub.subscribe(channel)
            logger.info(f"Listening for key expirations on {channel}")
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                key = message.get("data")
                try:
                    await handle_expired_key(backend, key)
                except (InteractionError, RedisError) as e:
                    logger.error(f"[AutoClose Error] {key}: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Expiry listener task cancelled")
            raise
        except RedisError as e:
            logger.error(f"Expiry listener lost its connection, retrying in {retry_delay}s: {e}", exc_info=True)
        finally:
            try:
                await pubsub.aclose()
            except RedisError as e:
                logger.warning(f"Error closing pub/sub connection for {channel}: {e}")

        await asyncio.sleep(retry_delay)
