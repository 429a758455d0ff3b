from fastapi import APIRouter, Depends, HTTPException

from backend import RedisBackend
from logging_config import get_logger
from routers.deps import Participant, get_backend, get_participant
from schemas.common import ActivityWindow, InteractionStatus
from schemas.polls import CreatePollRequest, OptionCount, Poll, PollOption, VoteRequest, new_poll

logger = get_logger(__name__)

polls_router = APIRouter(prefix="/rooms/{room_id}/polls", tags=["polls"])


async def get_room_poll(backend: RedisBackend, room_id: str, poll_id: str) -> Poll:
    poll = await backend.polls.get_poll(poll_id)
    if poll.room_id != room_id:
        logger.warning(f"Poll {poll_id} requested through room {room_id} but belongs to {poll.room_id}")
        raise HTTPException(status_code=404, detail="Poll not found")
    return poll


@polls_router.post("/", response_model=Poll)
async def create_poll(room_id: str, request: CreatePollRequest, backend: RedisBackend = Depends(get_backend)):
    logger.info(f"Poll creation request for room {room_id}: {request.title}")
    poll = new_poll(room_id, request)
    await backend.polls.add_poll_to_room(room_id, [poll])
    return poll


@polls_router.post("/bulk", response_model=list[Poll])
async def create_polls(room_id: str, requests: list[CreatePollRequest], backend: RedisBackend = Depends(get_backend)):
    logger.info(f"Bulk poll creation request for room {room_id}: {len(requests)} polls")
    polls = [new_poll(room_id, request) for request in requests]
    await backend.polls.add_poll_to_room(room_id, polls)
    return polls


@polls_router.get("/", response_model=list[Poll])
async def list_polls(room_id: str, backend: RedisBackend = Depends(get_backend)):
    """All polls of the room; active polls carry their live counts."""
    polls = await backend.polls.get_polls_in_room(room_id)
    active_ids = [poll.id for poll in polls if poll.status == InteractionStatus.ACTIVE]
    if not active_ids:
        return polls

    counts_by_poll = await backend.polls.get_multi_vote_counts(active_ids)
    result = []
    for poll in polls:
        counts = counts_by_poll.get(poll.id)
        if counts:
            options = [option.model_copy(update={"count": counts.get(option.id, option.count)}) for option in poll.options]
            poll = poll.model_copy(update={"options": options})
        result.append(poll)
    return result


@polls_router.post("/{poll_id}/start", response_model=ActivityWindow)
async def start_poll(room_id: str, poll_id: str, backend: RedisBackend = Depends(get_backend)):
    poll = await get_room_poll(backend, room_id, poll_id)
    window = await backend.polls.start_poll(poll_id, poll.time_limit_seconds)
    await backend.publish_message(room_id, {
        "type": "poll_started",
        "poll_id": poll_id,
        "title": poll.title,
        "options": poll.options,
        "time_limit_seconds": poll.time_limit_seconds,
        "started_at": window.started_at,
        "ended_at": window.ended_at,
    })
    return window


@polls_router.post("/{poll_id}/votes", response_model=list[OptionCount])
async def vote(
    room_id: str,
    poll_id: str,
    request: VoteRequest,
    participant: Participant = Depends(get_participant),
    backend: RedisBackend = Depends(get_backend),
):
    poll = await get_room_poll(backend, room_id, poll_id)
    if request.option_id >= len(poll.options):
        raise HTTPException(status_code=422, detail="Invalid option")

    options = await backend.polls.submit_vote(poll_id, participant.id, request.option_id, participant.name)
    await backend.publish_message(room_id, {"type": "poll_updated", "poll_id": poll_id, "options": options})
    return options


@polls_router.post("/{poll_id}/close", response_model=list[PollOption])
async def close_poll(room_id: str, poll_id: str, backend: RedisBackend = Depends(get_backend)):
    await get_room_poll(backend, room_id, poll_id)
    options = await backend.polls.close_poll(poll_id)
    await backend.publish_message(room_id, {"type": "poll_ended", "room_id": room_id, "poll_id": poll_id, "options": options})
    return options


@polls_router.get("/{poll_id}/voted")
async def has_voted(
    room_id: str,
    poll_id: str,
    participant: Participant = Depends(get_participant),
    backend: RedisBackend = Depends(get_backend),
):
    await get_room_poll(backend, room_id, poll_id)
    return {
        "voted": await backend.polls.has_voted(poll_id, participant.id),
        "option_id": await backend.polls.get_voted_option_id(poll_id, participant.id),
    }
