from fastapi import APIRouter, Depends, HTTPException

from backend import RedisBackend
from logging_config import get_logger
from routers.deps import Participant, get_backend, get_participant
from schemas.common import ActivityWindow, InteractionStatus
from schemas.qna import Answer, AnswerCount, AnswerRequest, CreateQnaRequest, Qna, new_qna

logger = get_logger(__name__)

qna_router = APIRouter(prefix="/rooms/{room_id}/qna", tags=["qna"])


async def get_room_qna(backend: RedisBackend, room_id: str, qna_id: str) -> Qna:
    qna = await backend.qna.get_qna(qna_id)
    if qna.room_id != room_id:
        logger.warning(f"Qna {qna_id} requested through room {room_id} but belongs to {qna.room_id}")
        raise HTTPException(status_code=404, detail="Qna not found")
    return qna


@qna_router.post("/", response_model=Qna)
async def create_qna(room_id: str, request: CreateQnaRequest, backend: RedisBackend = Depends(get_backend)):
    logger.info(f"Qna creation request for room {room_id}: {request.title}")
    qna = new_qna(room_id, request)
    await backend.qna.add_qna_to_room(room_id, [qna])
    return qna


@qna_router.post("/bulk", response_model=list[Qna])
async def create_qnas(room_id: str, requests: list[CreateQnaRequest], backend: RedisBackend = Depends(get_backend)):
    logger.info(f"Bulk qna creation request for room {room_id}: {len(requests)} qna")
    qnas = [new_qna(room_id, request) for request in requests]
    await backend.qna.add_qna_to_room(room_id, qnas)
    return qnas


@qna_router.get("/", response_model=list[Qna])
async def list_qnas(room_id: str, backend: RedisBackend = Depends(get_backend)):
    """All qna of the room; active ones carry the answers collected so far."""
    qnas = await backend.qna.get_qnas_in_room(room_id)
    result = []
    for qna in qnas:
        if qna.status == InteractionStatus.ACTIVE:
            qna = qna.model_copy(update={"answers": await backend.qna.get_active_answers(qna.id)})
        result.append(qna)
    return result


@qna_router.post("/{qna_id}/start", response_model=ActivityWindow)
async def start_qna(room_id: str, qna_id: str, backend: RedisBackend = Depends(get_backend)):
    qna = await get_room_qna(backend, room_id, qna_id)
    window = await backend.qna.start_qna(qna_id, qna.time_limit_seconds)
    await backend.publish_message(room_id, {
        "type": "qna_started",
        "qna_id": qna_id,
        "title": qna.title,
        "is_public": qna.is_public,
        "time_limit_seconds": qna.time_limit_seconds,
        "started_at": window.started_at,
        "ended_at": window.ended_at,
    })
    return window


@qna_router.post("/{qna_id}/answers", response_model=AnswerCount)
async def answer(
    room_id: str,
    qna_id: str,
    request: AnswerRequest,
    participant: Participant = Depends(get_participant),
    backend: RedisBackend = Depends(get_backend),
):
    qna = await get_room_qna(backend, room_id, qna_id)
    count = await backend.qna.submit_answer(qna_id, participant.id, participant.name, request.text)

    event = {"type": "qna_updated", "qna_id": qna_id, "count": count}
    if qna.is_public:
        event["answer"] = Answer(participant_id=participant.id, participant_name=participant.name, text=request.text)
    await backend.publish_message(room_id, event)
    return AnswerCount(count=count)


@qna_router.get("/{qna_id}/answers", response_model=list[Answer])
async def get_answers(room_id: str, qna_id: str, backend: RedisBackend = Depends(get_backend)):
    qna = await get_room_qna(backend, room_id, qna_id)
    if qna.status == InteractionStatus.ENDED:
        return qna.answers or []
    return await backend.qna.get_active_answers(qna_id)


@qna_router.post("/{qna_id}/close", response_model=list[Answer])
async def close_qna(room_id: str, qna_id: str, backend: RedisBackend = Depends(get_backend)):
    await get_room_qna(backend, room_id, qna_id)
    answers = await backend.qna.close_qna(qna_id)
    await backend.publish_message(room_id, {"type": "qna_ended", "room_id": room_id, "qna_id": qna_id, "answers": answers})
    return answers


@qna_router.get("/{qna_id}/answered")
async def has_answered(
    room_id: str,
    qna_id: str,
    participant: Participant = Depends(get_participant),
    backend: RedisBackend = Depends(get_backend),
):
    await get_room_qna(backend, room_id, qna_id)
    return {"answered": await backend.qna.has_answered(qna_id, participant.id)}
