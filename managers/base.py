import json
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, Type, TypeVar, get_args, get_origin

from pydantic import BaseModel
from pydantic_core import to_jsonable_python
from redis.asyncio import Redis
from redis.asyncio.client import Pipeline

from errors import PartialWriteFailure, RollbackFailure
from logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


def flatten(data: dict) -> dict[str, str]:
    """Convert a mapping into Redis hash fields, skipping None values."""
    flat = {}
    for k, v in to_jsonable_python(data).items():
        if v is None:
            continue
        if isinstance(v, (dict, list)):
            flat[k] = json.dumps(v)
        elif isinstance(v, bool):
            flat[k] = "true" if v else "false"
        else:
            flat[k] = str(v)
    return flat


def check_pipeline_results(results: list, operation: str):
    failed = [i for i, r in enumerate(results) if isinstance(r, Exception)]
    if failed:
        errors = [results[i] for i in failed]
        logger.error(f"[{operation}] Pipeline commands failed at {failed}: {errors}")
        raise PartialWriteFailure(operation, failed, errors)


def _structured_fields(model: Type[BaseModel]) -> set[str]:
    # Fields stored as JSON text: lists, dicts and nested models
    names = set()
    for name, info in model.model_fields.items():
        for candidate in (info.annotation, *get_args(info.annotation)):
            origin = get_origin(candidate)
            if origin in (list, dict) or candidate in (list, dict):
                names.add(name)
            elif isinstance(candidate, type) and issubclass(candidate, BaseModel):
                names.add(name)
    return names


class BaseRedisRepository(Generic[T]):
    """Hash-backed persistence for pydantic entities.

    Each entity lives in one Redis hash at ``{key_prefix}{id}``. Scalars are
    stored as text and coerced back to their declared types by the model on
    read; lists, dicts and nested models are stored as JSON.
    """

    key_prefix: str = ""
    model: Type[T]

    def __init__(self, redis_client: Redis):
        self.redis_client = redis_client
        self._json_fields = _structured_fields(self.model)

    def create_key(self, entity_id: str) -> str:
        return f"{self.key_prefix}{entity_id}"

    def serialize(self, entity: T) -> dict[str, str]:
        return flatten(entity.model_dump(mode="json"))

    def deserialize(self, data: dict[str, str]) -> T:
        result = {}
        for k, v in data.items():
            if k in self._json_fields:
                try:
                    result[k] = json.loads(v)
                    continue
                except (json.JSONDecodeError, TypeError):
                    logger.warning(f"Could not decode JSON field {k} of {self.model.__name__}")
            result[k] = v
        return self.model.model_validate(result)

    async def execute_pipeline(self, pipe: Pipeline, operation: str) -> list:
        """Run a pipeline and raise PartialWriteFailure if any command failed.

        Connection errors raised by the client propagate unchanged.
        """
        results = await pipe.execute(raise_on_error=False)
        check_pipeline_results(results, operation)
        return results

    async def save_one(self, entity_id: str, entity: T, ttl: Optional[int] = None):
        key = self.create_key(entity_id)
        if ttl and ttl > 0:
            # hset and expire travel in one MULTI/EXEC so the record is never seen without its TTL
            async with self.redis_client.pipeline(transaction=True) as pipe:
                self.add_save_to_pipeline(pipe, entity_id, entity, ttl)
                await self.execute_pipeline(pipe, "Hash-Save")
        else:
            await self.redis_client.hset(key, mapping=self.serialize(entity))
        logger.debug(f"[Hash-Save] Success: {key} (ttl={ttl})")

    async def save_many(self, entities: Iterable[T], ttl: Optional[int] = None):
        entities = list(entities)
        if not entities:
            return
        async with self.redis_client.pipeline(transaction=True) as pipe:
            for entity in entities:
                self.add_save_to_pipeline(pipe, entity.id, entity, ttl)
            await self.execute_pipeline(pipe, "Hash-SaveMany")
        logger.debug(f"[Hash-SaveMany] Saved {len(entities)} entities with prefix {self.key_prefix}")

    async def find_one(self, entity_id: str) -> Optional[T]:
        key = self.create_key(entity_id)
        data = await self.redis_client.hgetall(key)
        if not data:
            logger.debug(f"[Hash-FindOne] Not found: {key}")
            return None
        return self.deserialize(data)

    async def find_many(self, entity_ids: Iterable[str]) -> list[T]:
        """Fetch entities in input order; ids with no record are left out."""
        entity_ids = list(entity_ids)
        if not entity_ids:
            return []
        async with self.redis_client.pipeline(transaction=False) as pipe:
            for entity_id in entity_ids:
                pipe.hgetall(self.create_key(entity_id))
            results = await pipe.execute(raise_on_error=False)

        entities = []
        for entity_id, data in zip(entity_ids, results):
            if isinstance(data, Exception):
                logger.error(f"[Hash-FindMany] Failed to read {self.create_key(entity_id)}: {data}")
                continue
            if not data:
                continue
            entities.append(self.deserialize(data))
        return entities

    async def update_partial(self, entity_id: str, fields: dict[str, Any]):
        key = self.create_key(entity_id)
        flat = flatten(fields)
        if not flat:
            return
        await self.redis_client.hset(key, mapping=flat)
        logger.debug(f"[Hash-Update] Field(s) updated: {key} -> {list(flat)}")

    async def delete(self, entity_id: str):
        key = self.create_key(entity_id)
        deleted = await self.redis_client.delete(key)
        if deleted:
            logger.debug(f"[Delete] Success: {key}")
        else:
            logger.warning(f"[Delete] Key not found or already deleted: {key}")

    def add_save_to_pipeline(self, pipe: Pipeline, entity_id: str, entity: T, ttl: Optional[int] = None):
        key = self.create_key(entity_id)
        pipe.hset(key, mapping=self.serialize(entity))
        if ttl and ttl > 0:
            pipe.expire(key, ttl)

    def add_update_partial_to_pipeline(self, pipe: Pipeline, entity_id: str, fields: dict[str, Any]):
        flat = flatten(fields)
        if flat:
            pipe.hset(self.create_key(entity_id), mapping=flat)

    def add_clear_fields_to_pipeline(self, pipe: Pipeline, entity_id: str, *fields: str):
        if fields:
            pipe.hdel(self.create_key(entity_id), *fields)

    def add_delete_to_pipeline(self, pipe: Pipeline, entity_id: str):
        key = self.create_key(entity_id)
        pipe.delete(key)
        logger.debug(f"[Pipeline-Add] Prepare to delete: {key}")


class Compensation:
    """Undo log for a multi-step write.

    The attempt phase registers one undo callable per side effect it applies.
    ``rollback`` runs them newest first; each step may fail on its own, and a
    failed step is logged as a RollbackFailure at CRITICAL without stopping
    the remaining steps.
    """

    def __init__(self, operation: str):
        self.operation = operation
        self._steps: list[tuple[str, Callable[[], Awaitable[Any]]]] = []

    def add(self, step: str, undo: Callable[[], Awaitable[Any]]):
        self._steps.append((step, undo))

    def __len__(self):
        return len(self._steps)

    async def rollback(self) -> list[RollbackFailure]:
        failures = []
        while self._steps:
            step, undo = self._steps.pop()
            try:
                await undo()
                logger.info(f"[{self.operation}] Rolled back: {step}")
            except Exception as e:
                failure = RollbackFailure(self.operation, step, e)
                logger.critical(f"[CRITICAL] {failure}. Manual cleanup may be required.", exc_info=True)
                failures.append(failure)
        return failures
