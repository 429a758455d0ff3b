import pytest

from errors import DuplicateSubmissionError, InvalidStateError, NotFoundError, PartialWriteFailure
from schemas.common import InteractionStatus
from schemas.qna import CreateQnaRequest, new_qna


def make_qna(room_id="room-1", title="What did you learn today?", time_limit_seconds=120, is_public=True):
    return new_qna(room_id, CreateQnaRequest(title=title, time_limit_seconds=time_limit_seconds, is_public=is_public))


async def started_qna(qna_manager, **kwargs):
    qna = make_qna(**kwargs)
    await qna_manager.add_qna_to_room(qna.room_id, [qna])
    await qna_manager.start_qna(qna.id, qna.time_limit_seconds)
    return qna


@pytest.mark.asyncio
async def test_qnas_in_room_keep_creation_order(qna_manager):
    first, second = make_qna(title="First"), make_qna(title="Second", is_public=False)
    await qna_manager.add_qna_to_room("room-1", [first, second])

    qnas = await qna_manager.get_qnas_in_room("room-1")
    assert [q.title for q in qnas] == ["First", "Second"]
    assert [q.is_public for q in qnas] == [True, False]
    assert qnas[0].answers is None


@pytest.mark.asyncio
async def test_add_qna_failure_leaves_no_residue(qna_manager, redis_client, fail_pipeline):
    qna = make_qna()
    fail_pipeline(redis_client, index=0)

    with pytest.raises(PartialWriteFailure):
        await qna_manager.add_qna_to_room("room-1", [qna])

    assert await qna_manager.get_qnas_in_room("room-1") == []
    assert not await redis_client.exists(f"qna:{qna.id}")


@pytest.mark.asyncio
async def test_start_qna(qna_manager):
    qna = make_qna()
    await qna_manager.add_qna_to_room("room-1", [qna])

    window = await qna_manager.start_qna(qna.id, 120)

    stored = await qna_manager.get_qna(qna.id)
    assert stored.status == InteractionStatus.ACTIVE
    assert stored.started_at == window.started_at
    assert window.ended_at is not None

    with pytest.raises(InvalidStateError):
        await qna_manager.start_qna(qna.id, 120)


@pytest.mark.asyncio
async def test_get_missing_qna(qna_manager):
    with pytest.raises(NotFoundError):
        await qna_manager.get_qna("missing")


@pytest.mark.asyncio
async def test_answers_are_counted_in_order(qna_manager):
    qna = await started_qna(qna_manager)

    assert await qna_manager.submit_answer(qna.id, "alice", "Alice", "Recursion") == 1
    assert await qna_manager.submit_answer(qna.id, "bob", "Bob", "Generators") == 2

    answers = await qna_manager.get_active_answers(qna.id)
    assert [(a.participant_name, a.text) for a in answers] == [("Alice", "Recursion"), ("Bob", "Generators")]
    assert await qna_manager.has_answered(qna.id, "alice")
    assert not await qna_manager.has_answered(qna.id, "carol")


@pytest.mark.asyncio
async def test_duplicate_answer_is_rejected(qna_manager):
    qna = await started_qna(qna_manager)
    await qna_manager.submit_answer(qna.id, "alice", "Alice", "First")

    with pytest.raises(DuplicateSubmissionError):
        await qna_manager.submit_answer(qna.id, "alice", "Alice", "Second")

    assert len(await qna_manager.get_active_answers(qna.id)) == 1


@pytest.mark.asyncio
async def test_answer_on_inactive_qna_is_rejected(qna_manager):
    qna = make_qna()
    await qna_manager.add_qna_to_room("room-1", [qna])

    with pytest.raises(InvalidStateError):
        await qna_manager.submit_answer(qna.id, "alice", "Alice", "Too early")

    assert await qna_manager.get_active_answers(qna.id) == []


@pytest.mark.asyncio
async def test_failed_answer_is_rolled_back(qna_manager, redis_client, fail_pipeline):
    qna = await started_qna(qna_manager)
    fail_pipeline(redis_client, index=2)

    with pytest.raises(PartialWriteFailure):
        await qna_manager.submit_answer(qna.id, "alice", "Alice", "Lost")

    assert await qna_manager.get_active_answers(qna.id) == []
    assert not await qna_manager.has_answered(qna.id, "alice")


@pytest.mark.asyncio
async def test_close_qna_stores_answers(qna_manager):
    qna = await started_qna(qna_manager)
    await qna_manager.submit_answer(qna.id, "alice", "Alice", "Recursion")

    answers = await qna_manager.close_qna(qna.id)

    assert [a.text for a in answers] == ["Recursion"]
    stored = await qna_manager.get_qna(qna.id)
    assert stored.status == InteractionStatus.ENDED
    assert stored.answers == answers
    assert await qna_manager.get_final_results(qna.id) == answers
    assert await qna_manager.close_qna(qna.id) == answers

    with pytest.raises(InvalidStateError):
        await qna_manager.submit_answer(qna.id, "bob", "Bob", "Late")


@pytest.mark.asyncio
async def test_close_qna_without_answers(qna_manager):
    qna = await started_qna(qna_manager)

    assert await qna_manager.close_qna(qna.id) == []
    assert await qna_manager.get_final_results(qna.id) == []


@pytest.mark.asyncio
async def test_handle_expired_key_closes_qna(qna_manager):
    qna = await started_qna(qna_manager)
    await qna_manager.submit_answer(qna.id, "alice", "Alice", "Recursion")

    closed = await qna_manager.handle_expired_key(f"qna:{qna.id}:active")

    assert closed.status == InteractionStatus.ENDED
    assert [a.participant_id for a in closed.answers] == ["alice"]
    assert await qna_manager.handle_expired_key(f"qna:{qna.id}:active") is None
    assert await qna_manager.handle_expired_key(f"poll:{qna.id}:active") is None
