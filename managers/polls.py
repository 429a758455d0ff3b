from datetime import timedelta
from typing import Iterable, Optional

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import ExecAbortError

from constants import POLL_COUNTER_TTL_MARGIN_SECONDS
from errors import DuplicateSubmissionError, InvalidStateError, NotFoundError
from logging_config import get_logger
from managers.base import BaseRedisRepository, Compensation, check_pipeline_results
from redis_keys import (
    REDIS_POLL_ACTIVE_KEY,
    REDIS_POLL_CHOICES_KEY,
    REDIS_POLL_COUNTS_KEY,
    REDIS_POLL_PREFIX,
    REDIS_POLL_VOTERS_KEY,
    REDIS_ROOM_POLLS_KEY,
)
from schemas.common import ActivityWindow, InteractionStatus, utc_now
from schemas.polls import OptionCount, Poll, PollOption, Voter

logger = get_logger(__name__)


def _parse_counts(raw: Optional[dict]) -> dict[int, int]:
    counts = {}
    for option_id, count in (raw or {}).items():
        try:
            counts[int(option_id)] = int(count)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed counter field {option_id}={count}")
    return counts


def _parse_choice(value: Optional[str]) -> tuple[Optional[int], str]:
    """'2:Alice' -> (2, 'Alice')"""
    if not value:
        return None, ""
    option_id, _, name = value.partition(":")
    try:
        return int(option_id), name
    except ValueError:
        logger.warning(f"Ignoring malformed voter choice {value}")
        return None, name


class PollManager(BaseRedisRepository[Poll]):
    """Poll lifecycle, room indexing and vote tallying.

    Lifecycle: pending -> active -> ended. The ``poll:{id}:active`` flag, not
    the record's status, decides whether votes are accepted; it lapses on
    its own through its TTL.
    """

    key_prefix = REDIS_POLL_PREFIX
    model = Poll

    def __init__(self, redis_client: Redis, counter_ttl_margin: int = POLL_COUNTER_TTL_MARGIN_SECONDS):
        super().__init__(redis_client)
        self.counter_ttl_margin = counter_ttl_margin

    def get_poll_list_key(self, room_id: str) -> str:
        return REDIS_ROOM_POLLS_KEY.format(room_id=room_id)

    def get_active_key(self, poll_id: str) -> str:
        return REDIS_POLL_ACTIVE_KEY.format(poll_id=poll_id)

    def get_vote_count_key(self, poll_id: str) -> str:
        return REDIS_POLL_COUNTS_KEY.format(poll_id=poll_id)

    def get_voter_key(self, poll_id: str) -> str:
        return REDIS_POLL_VOTERS_KEY.format(poll_id=poll_id)

    def get_choice_key(self, poll_id: str) -> str:
        return REDIS_POLL_CHOICES_KEY.format(poll_id=poll_id)

    async def add_poll_to_room(self, room_id: str, polls: Iterable[Poll]):
        polls = list(polls)
        if not polls:
            return
        list_key = self.get_poll_list_key(room_id)
        compensation = Compensation("AddPollToRoom")
        compensation.add(f"remove {len(polls)} polls from room {room_id}", lambda: self._remove_polls(room_id, polls))

        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                for poll in polls:
                    self.add_save_to_pipeline(pipe, poll.id, poll)
                    pipe.rpush(list_key, poll.id)
                await self.execute_pipeline(pipe, "AddPollToRoom")
        except Exception as e:
            logger.error(f"[AddPollToRoom] Failed to add polls to room {room_id}. Starting rollback...: {e}")
            await compensation.rollback()
            raise

        logger.info(f"[AddPollToRoom] Successfully added {len(polls)} polls to room {room_id}")

    async def _remove_polls(self, room_id: str, polls: list[Poll]):
        list_key = self.get_poll_list_key(room_id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            for poll in polls:
                self.add_delete_to_pipeline(pipe, poll.id)
                pipe.lrem(list_key, 0, poll.id)
            await self.execute_pipeline(pipe, "AddPollToRoom-Rollback")

    async def get_polls_in_room(self, room_id: str) -> list[Poll]:
        poll_ids = await self.redis_client.lrange(self.get_poll_list_key(room_id), 0, -1)
        if not poll_ids:
            return []
        return await self.find_many(poll_ids)

    async def get_poll(self, poll_id: str) -> Poll:
        poll = await self.find_one(poll_id)
        if not poll:
            raise NotFoundError("Poll", poll_id)
        return poll

    async def get_vote_counts(self, poll_id: str) -> dict[int, int]:
        raw = await self.redis_client.hgetall(self.get_vote_count_key(poll_id))
        return _parse_counts(raw)

    async def get_multi_vote_counts(self, poll_ids: Iterable[str]) -> dict[str, dict[int, int]]:
        poll_ids = list(poll_ids)
        if not poll_ids:
            return {}
        async with self.redis_client.pipeline(transaction=False) as pipe:
            for poll_id in poll_ids:
                pipe.hgetall(self.get_vote_count_key(poll_id))
            results = await pipe.execute(raise_on_error=False)

        counts_by_poll = {}
        for poll_id, raw in zip(poll_ids, results):
            if isinstance(raw, Exception):
                logger.error(f"[GetMultiVoteCounts] Failed to read counts of poll {poll_id}: {raw}")
                continue
            counts_by_poll[poll_id] = _parse_counts(raw)
        return counts_by_poll

    async def has_voted(self, poll_id: str, participant_id: str) -> bool:
        return bool(await self.redis_client.sismember(self.get_voter_key(poll_id), participant_id))

    async def get_voted_option_id(self, poll_id: str, participant_id: str) -> Optional[int]:
        """Option the participant picked, so a reconnecting client can restore its selection."""
        option_id, _ = _parse_choice(await self.redis_client.hget(self.get_choice_key(poll_id), participant_id))
        return option_id

    async def is_active(self, poll_id: str) -> bool:
        return bool(await self.redis_client.exists(self.get_active_key(poll_id)))

    async def start_poll(self, poll_id: str, time_limit_seconds: int) -> ActivityWindow:
        poll = await self.get_poll(poll_id)
        if poll.status != InteractionStatus.PENDING:
            raise InvalidStateError(f"Poll {poll_id} is already {poll.status.value}")

        active_key = self.get_active_key(poll_id)
        count_key = self.get_vote_count_key(poll_id)
        now = utc_now()
        started_at = now.isoformat()
        ended_at = None
        if time_limit_seconds > 0:
            ended_at = (now + timedelta(seconds=time_limit_seconds)).isoformat()

        compensation = Compensation("StartPoll")
        compensation.add(f"revert poll {poll_id} to pending", lambda: self._revert_to_pending(poll_id))
        compensation.add(f"delete activity flag {active_key}", lambda: self.redis_client.delete(active_key))
        compensation.add(f"delete counters {count_key}", lambda: self.redis_client.delete(count_key))

        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                self.add_update_partial_to_pipeline(pipe, poll_id, {
                    "status": InteractionStatus.ACTIVE,
                    "started_at": started_at,
                    "ended_at": ended_at,
                    "updated_at": started_at,
                })
                # No time limit: the flag still expires after the margin so it cannot linger forever
                pipe.set(active_key, "true", ex=time_limit_seconds or self.counter_ttl_margin)
                pipe.hset(count_key, mapping={str(option.id): 0 for option in poll.options})
                pipe.expire(count_key, time_limit_seconds + self.counter_ttl_margin)
                await self.execute_pipeline(pipe, "StartPoll")
        except Exception as e:
            logger.error(f"[StartPoll] Failed: {poll_id}. Rolling back...: {e}")
            await compensation.rollback()
            raise

        logger.info(f"[StartPoll] Success: {poll_id} for {time_limit_seconds}s")
        return ActivityWindow(started_at=started_at, ended_at=ended_at)

    async def _revert_to_pending(self, poll_id: str):
        async with self.redis_client.pipeline(transaction=True) as pipe:
            self.add_update_partial_to_pipeline(pipe, poll_id, {
                "status": InteractionStatus.PENDING,
                "updated_at": utc_now().isoformat(),
            })
            self.add_clear_fields_to_pipeline(pipe, poll_id, "started_at", "ended_at")
            await self.execute_pipeline(pipe, "StartPoll-Rollback")

    async def submit_vote(self, poll_id: str, participant_id: str, option_id: int, participant_name: str = "") -> list[OptionCount]:
        active_key = self.get_active_key(poll_id)
        voter_key = self.get_voter_key(poll_id)
        count_key = self.get_vote_count_key(poll_id)
        choice_key = self.get_choice_key(poll_id)

        if not await self.redis_client.exists(active_key):
            logger.warning(f"[SubmitVote] Reject: Poll {poll_id} is not active. Participant: {participant_id}")
            raise InvalidStateError(f"Poll {poll_id} is not active")

        # SADD is the only concurrency control: the first insertion wins, later ones see 0
        if not await self.redis_client.sadd(voter_key, participant_id):
            logger.warning(f"[SubmitVote] Reject: Duplicate vote attempt. Poll: {poll_id}, Participant: {participant_id}")
            raise DuplicateSubmissionError("Poll", poll_id, participant_id)

        compensation = Compensation("SubmitVote")
        compensation.add(f"release vote of {participant_id}", lambda: self.redis_client.srem(voter_key, participant_id))
        compensation.add(f"forget choice of {participant_id}", lambda: self.redis_client.hdel(choice_key, participant_id))
        results = None
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hincrby(count_key, str(option_id), 1)
                pipe.expire(voter_key, self.counter_ttl_margin)
                pipe.hset(choice_key, participant_id, f"{option_id}:{participant_name}")
                pipe.expire(choice_key, self.counter_ttl_margin)
                pipe.hgetall(count_key)
                results = await pipe.execute(raise_on_error=False)
            check_pipeline_results(results, "SubmitVote")
        except Exception as e:
            # Undo the increment unless it is known not to have happened.
            # An aborted MULTI ran nothing; a failed HINCRBY changed nothing.
            incremented = not isinstance(e, ExecAbortError) and (results is None or not isinstance(results[0], Exception))
            if incremented:
                compensation.add(
                    f"revert count of option {option_id}",
                    lambda: self.redis_client.hincrby(count_key, str(option_id), -1),
                )
            logger.error(f"[SubmitVote] Error: Poll {poll_id}. Rolling back...: {e}")
            await compensation.rollback()
            raise

        counts = _parse_counts(results[4])
        logger.info(f"[SubmitVote] Success: Poll {poll_id}, Participant {participant_id}, Option {option_id}")
        return [OptionCount(id=i, count=c) for i, c in sorted(counts.items())]

    async def close_poll(self, poll_id: str) -> list[PollOption]:
        """End a poll and freeze the live counters into the poll record."""
        poll = await self.get_poll(poll_id)
        if poll.status == InteractionStatus.PENDING:
            raise InvalidStateError(f"Poll {poll_id} has not been started")
        if poll.status == InteractionStatus.ENDED:
            return poll.options

        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.hgetall(self.get_vote_count_key(poll_id))
            pipe.hgetall(self.get_choice_key(poll_id))
            pipe.delete(self.get_active_key(poll_id))
            results = await self.execute_pipeline(pipe, "ClosePoll")

        counts = _parse_counts(results[0])
        voters_by_option: dict[int, list[Voter]] = {}
        for participant_id, value in (results[1] or {}).items():
            option_id, name = _parse_choice(value)
            if option_id is not None:
                voters_by_option.setdefault(option_id, []).append(Voter(id=participant_id, name=name))

        final_options = [
            PollOption(
                id=option.id,
                value=option.value,
                count=counts.get(option.id, option.count),
                voters=voters_by_option.get(option.id, []),
            )
            for option in poll.options
        ]
        now = utc_now().isoformat()
        await self.update_partial(poll_id, {
            "status": InteractionStatus.ENDED,
            "options": final_options,
            "ended_at": now,
            "updated_at": now,
        })
        logger.info(f"[ClosePoll] Confirmed: {poll_id}")
        return final_options

    async def get_final_results(self, poll_id: str) -> list[PollOption]:
        poll = await self.find_one(poll_id)
        if not poll or poll.status != InteractionStatus.ENDED:
            return []
        return poll.options

    async def handle_expired_key(self, key: str) -> Optional[Poll]:
        """Close the poll whose activity flag just expired.

        Returns the closed poll, or None when the key is not an activity flag
        or the poll is already gone or ended.
        """
        parts = key.split(":")
        if len(parts) != 3 or f"{parts[0]}:" != self.key_prefix or parts[2] != "active":
            return None
        poll_id = parts[1]
        poll = await self.find_one(poll_id)
        if not poll or poll.status == InteractionStatus.ENDED:
            return None
        logger.info(f"[Redis Expiry] Poll {poll_id} time limit reached, closing")
        final_options = await self.close_poll(poll_id)
        return poll.model_copy(update={"status": InteractionStatus.ENDED, "options": final_options})

    async def add_clear_to_pipeline(self, pipe: Pipeline, room_id: str):
        list_key = self.get_poll_list_key(room_id)
        for poll_id in await self.redis_client.lrange(list_key, 0, -1):
            self.add_delete_to_pipeline(pipe, poll_id)
            pipe.delete(self.get_active_key(poll_id))
            pipe.delete(self.get_vote_count_key(poll_id))
            pipe.delete(self.get_voter_key(poll_id))
            pipe.delete(self.get_choice_key(poll_id))
        pipe.delete(list_key)
