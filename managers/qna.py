import json
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
    REDIS_QNA_ACTIVE_KEY,
    REDIS_QNA_ANSWERERS_KEY,
    REDIS_QNA_ANSWERS_KEY,
    REDIS_QNA_PREFIX,
    REDIS_ROOM_QNA_KEY,
)
from schemas.common import ActivityWindow, InteractionStatus, utc_now
from schemas.qna import Answer, Qna

logger = get_logger(__name__)


class QnaManager(BaseRedisRepository[Qna]):
    """Open-text questions: same lifecycle as polls, answers appended to a list."""

    key_prefix = REDIS_QNA_PREFIX
    model = Qna

    def __init__(self, redis_client: Redis, answerer_ttl: int = POLL_COUNTER_TTL_MARGIN_SECONDS):
        super().__init__(redis_client)
        self.answerer_ttl = answerer_ttl

    def get_qna_list_key(self, room_id: str) -> str:
        return REDIS_ROOM_QNA_KEY.format(room_id=room_id)

    def get_active_key(self, qna_id: str) -> str:
        return REDIS_QNA_ACTIVE_KEY.format(qna_id=qna_id)

    def get_answer_list_key(self, qna_id: str) -> str:
        return REDIS_QNA_ANSWERS_KEY.format(qna_id=qna_id)

    def get_answerer_key(self, qna_id: str) -> str:
        return REDIS_QNA_ANSWERERS_KEY.format(qna_id=qna_id)

    async def add_qna_to_room(self, room_id: str, qnas: Iterable[Qna]):
        qnas = list(qnas)
        if not qnas:
            return
        list_key = self.get_qna_list_key(room_id)
        compensation = Compensation("AddQnaToRoom")
        compensation.add(f"remove {len(qnas)} qnas from room {room_id}", lambda: self._remove_qnas(room_id, qnas))

        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                for qna in qnas:
                    self.add_save_to_pipeline(pipe, qna.id, qna)
                    pipe.rpush(list_key, qna.id)
                await self.execute_pipeline(pipe, "AddQnaToRoom")
        except Exception as e:
            logger.error(f"[AddQnaToRoom] Failed to add qnas to room {room_id}. Starting rollback...: {e}")
            await compensation.rollback()
            raise

        logger.info(f"[AddQnaToRoom] Successfully added {len(qnas)} qnas to room {room_id}")

    async def _remove_qnas(self, room_id: str, qnas: list[Qna]):
        list_key = self.get_qna_list_key(room_id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            for qna in qnas:
                self.add_delete_to_pipeline(pipe, qna.id)
                pipe.lrem(list_key, 0, qna.id)
            await self.execute_pipeline(pipe, "AddQnaToRoom-Rollback")

    async def get_qnas_in_room(self, room_id: str) -> list[Qna]:
        qna_ids = await self.redis_client.lrange(self.get_qna_list_key(room_id), 0, -1)
        if not qna_ids:
            return []
        return await self.find_many(qna_ids)

    async def get_qna(self, qna_id: str) -> Qna:
        qna = await self.find_one(qna_id)
        if not qna:
            raise NotFoundError("Qna", qna_id)
        return qna

    async def start_qna(self, qna_id: str, time_limit_seconds: int) -> ActivityWindow:
        qna = await self.get_qna(qna_id)
        if qna.status != InteractionStatus.PENDING:
            raise InvalidStateError(f"Qna {qna_id} is already {qna.status.value}")

        active_key = self.get_active_key(qna_id)
        now = utc_now()
        started_at = now.isoformat()
        ended_at = (now + timedelta(seconds=time_limit_seconds)).isoformat() if time_limit_seconds > 0 else None

        compensation = Compensation("StartQna")
        compensation.add(f"revert qna {qna_id} to pending", lambda: self._revert_to_pending(qna_id))
        compensation.add(f"delete activity flag {active_key}", lambda: self.redis_client.delete(active_key))

        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                self.add_update_partial_to_pipeline(pipe, qna_id, {
                    "status": InteractionStatus.ACTIVE,
                    "started_at": started_at,
                    "ended_at": ended_at,
                    "updated_at": started_at,
                })
                pipe.set(active_key, "true", ex=time_limit_seconds or self.answerer_ttl)
                await self.execute_pipeline(pipe, "StartQna")
        except Exception as e:
            logger.error(f"[StartQna] Failed: {qna_id}. Rolling back...: {e}")
            await compensation.rollback()
            raise

        logger.info(f"[StartQna] Success: {qna_id} for {time_limit_seconds}s")
        return ActivityWindow(started_at=started_at, ended_at=ended_at)

    async def _revert_to_pending(self, qna_id: str):
        async with self.redis_client.pipeline(transaction=True) as pipe:
            self.add_update_partial_to_pipeline(pipe, qna_id, {
                "status": InteractionStatus.PENDING,
                "updated_at": utc_now().isoformat(),
            })
            self.add_clear_fields_to_pipeline(pipe, qna_id, "started_at", "ended_at")
            await self.execute_pipeline(pipe, "StartQna-Rollback")

    async def submit_answer(self, qna_id: str, participant_id: str, participant_name: str, text: str) -> int:
        """Append one answer and return the number of answers so far."""
        active_key = self.get_active_key(qna_id)
        answer_key = self.get_answer_list_key(qna_id)
        answerer_key = self.get_answerer_key(qna_id)

        if not await self.redis_client.exists(active_key):
            logger.warning(f"[SubmitAnswer] Reject: Qna {qna_id} is not active. Participant: {participant_id}")
            raise InvalidStateError(f"Qna {qna_id} is not active")

        if not await self.redis_client.sadd(answerer_key, participant_id):
            logger.warning(f"[SubmitAnswer] Reject: Duplicate answer attempt. Qna: {qna_id}, Participant: {participant_id}")
            raise DuplicateSubmissionError("Qna", qna_id, participant_id)

        compensation = Compensation("SubmitAnswer")
        compensation.add(f"release answer of {participant_id}", lambda: self.redis_client.srem(answerer_key, participant_id))

        payload = Answer(participant_id=participant_id, participant_name=participant_name, text=text).model_dump_json()
        results = None
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.rpush(answer_key, payload)
                pipe.expire(answerer_key, self.answerer_ttl)
                pipe.expire(answer_key, self.answerer_ttl)
                results = await pipe.execute(raise_on_error=False)
            check_pipeline_results(results, "SubmitAnswer")
        except Exception as e:
            # An aborted MULTI pushed nothing
            pushed = not isinstance(e, ExecAbortError) and (results is None or not isinstance(results[0], Exception))
            if pushed:
                compensation.add(
                    f"remove answer of {participant_id}",
                    lambda: self.redis_client.lrem(answer_key, -1, payload),
                )
            logger.error(f"[SubmitAnswer] Error: Qna {qna_id}. Rolling back...: {e}")
            await compensation.rollback()
            raise

        count = results[0]
        logger.info(f"[SubmitAnswer] Success: Qna {qna_id}, Participant {participant_id} ({count} answers)")
        return count

    async def get_active_answers(self, qna_id: str) -> list[Answer]:
        raw_answers = await self.redis_client.lrange(self.get_answer_list_key(qna_id), 0, -1)
        return [Answer.model_validate(json.loads(raw)) for raw in raw_answers or []]

    async def has_answered(self, qna_id: str, participant_id: str) -> bool:
        return bool(await self.redis_client.sismember(self.get_answerer_key(qna_id), participant_id))

    async def close_qna(self, qna_id: str) -> list[Answer]:
        """End a qna and copy its answers into the qna record."""
        qna = await self.get_qna(qna_id)
        if qna.status == InteractionStatus.PENDING:
            raise InvalidStateError(f"Qna {qna_id} has not been started")
        if qna.status == InteractionStatus.ENDED:
            return qna.answers or []

        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.delete(self.get_active_key(qna_id))
            pipe.lrange(self.get_answer_list_key(qna_id), 0, -1)
            results = await self.execute_pipeline(pipe, "CloseQna")

        answers = [Answer.model_validate(json.loads(raw)) for raw in results[1] or []]
        now = utc_now().isoformat()
        await self.update_partial(qna_id, {
            "status": InteractionStatus.ENDED,
            "answers": answers,
            "ended_at": now,
            "updated_at": now,
        })
        logger.info(f"[CloseQna] Successfully closed: {qna_id}, Total answers: {len(answers)}")
        return answers

    async def get_final_results(self, qna_id: str) -> list[Answer]:
        qna = await self.find_one(qna_id)
        if not qna or qna.status != InteractionStatus.ENDED or not qna.answers:
            return []
        return qna.answers

    async def handle_expired_key(self, key: str) -> Optional[Qna]:
        parts = key.split(":")
        if len(parts) != 3 or f"{parts[0]}:" != self.key_prefix or parts[2] != "active":
            return None
        qna_id = parts[1]
        qna = await self.find_one(qna_id)
        if not qna or qna.status == InteractionStatus.ENDED:
            return None
        logger.info(f"[Redis Expiry] Qna {qna_id} time limit reached, closing")
        answers = await self.close_qna(qna_id)
        return qna.model_copy(update={"status": InteractionStatus.ENDED, "answers": answers})

    async def add_clear_to_pipeline(self, pipe: Pipeline, room_id: str):
        list_key = self.get_qna_list_key(room_id)
        for qna_id in await self.redis_client.lrange(list_key, 0, -1):
            self.add_delete_to_pipeline(pipe, qna_id)
            pipe.delete(self.get_active_key(qna_id))
            pipe.delete(self.get_answer_list_key(qna_id))
            pipe.delete(self.get_answerer_key(qna_id))
        pipe.delete(list_key)
