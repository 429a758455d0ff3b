"""
Common test fixtures.

Every test gets its own in-memory Redis server (fakeredis, with Lua
support for the rate limiter) and managers bound to it.
"""
import fakeredis
import pytest
from redis.exceptions import ResponseError

from backend import RedisBackend
from managers.chat import ChatManager
from managers.polls import PollManager
from managers.qna import QnaManager


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def poll_manager(redis_client):
    return PollManager(redis_client)


@pytest.fixture
def qna_manager(redis_client):
    return QnaManager(redis_client)


@pytest.fixture
def chat_manager(redis_client):
    return ChatManager(redis_client)


@pytest.fixture
def backend(redis_client):
    return RedisBackend(redis_client)


@pytest.fixture
def published(backend, monkeypatch):
    """Capture room events instead of publishing them."""
    events = []

    async def publish_message(room_id, message):
        events.append((room_id, message))
        return 1

    monkeypatch.setattr(backend, "publish_message", publish_message)
    return events


@pytest.fixture
def fail_pipeline(monkeypatch):
    """Make the next pipeline(s) of a client report a failed command.

    The commands still run; the result at ``index`` is replaced with an
    error, the way a partially applied MULTI/EXEC reports it. With
    ``error`` set, execute raises it instead and nothing runs, the way an
    aborted transaction behaves.
    """

    def install(client, index: int = 0, times: int = 1, error: Exception = None):
        real_pipeline = client.pipeline
        remaining = {"count": times}

        def pipeline(*args, **kwargs):
            pipe = real_pipeline(*args, **kwargs)
            if remaining["count"] > 0:
                remaining["count"] -= 1
                real_execute = pipe.execute

                async def execute(raise_on_error=True):
                    if error is not None:
                        raise error
                    results = await real_execute(raise_on_error=raise_on_error)
                    results[index] = ResponseError("injected failure")
                    return results

                pipe.execute = execute
            return pipe

        monkeypatch.setattr(client, "pipeline", pipeline)

    return install
