import math
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Query, status
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel

from voicetip.contracts import SynthesisJob
from voicetip.gateway.access import can_submit_as, can_view_creator
from voicetip.gateway.deps import (
    ArtifactStoreDep,
    AuthenticatedUser,
    CurrentTTSRequest,
    JobQueueDep,
    NotificationHubDep,
    RequestStoreDep,
    ServicesDep,
    SettingsDep,
)
from voicetip.gateway.domain_models import Creator, RequestStatus, TTSRequest
from voicetip.gateway.exceptions import (
    ForbiddenError,
    InvalidInputError,
    NotReadyError,
    QueueUnavailableError,
    ResourceNotFoundError,
    StorageError,
)
from voicetip.gateway.metrics import log_event
from voicetip.gateway.notifications import event_for
from voicetip.workers.pool import fail_request
from voicetip.workers.synthesis import VOICES

router = APIRouter(prefix="/v1", tags=["tts"])

QUEUE_UNAVAILABLE_REASON = "queue unavailable"


class TTSSubmitRequest(BaseModel):
    # missing fields are reported as InvalidInputError
    message: str | None = None
    voice: str | None = None
    requester_id: int | None = None
    creator_id: int | None = None


class TTSSubmitResponse(BaseModel):
    request_id: int
    status: RequestStatus


class TTSStatusResponse(BaseModel):
    request_id: int
    status: RequestStatus
    audio_url: str | None


class TTSRequestRead(BaseModel):
    id: int
    requester_id: int
    creator_id: int
    message: str
    voice: str
    status: RequestStatus
    audio_url: str | None
    error: str | None
    created_at: datetime
    processed_at: datetime | None


class TTSRequestPage(BaseModel):
    items: list[TTSRequestRead]
    total: int
    page: int
    limit: int
    pages: int


class VoiceRead(BaseModel):
    id: str
    name: str


def _require_text(value: str | None, field: str) -> str:
    if value is None or not value.strip():
        raise InvalidInputError(f"Field {field!r} is required")
    return value


def _page(rows: list[TTSRequest], total: int, page: int, limit: int) -> TTSRequestPage:
    return TTSRequestPage(
        items=[TTSRequestRead.model_validate(row, from_attributes=True) for row in rows],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.post("/tts", status_code=status.HTTP_201_CREATED)
async def submit_tts_request(
    body: TTSSubmitRequest,
    user: AuthenticatedUser,
    services: ServicesDep,
    store: RequestStoreDep,
    queue: JobQueueDep,
    hub: NotificationHubDep,
) -> TTSSubmitResponse:
    """Record a text-to-speech request and hand it to the workers.

    The request is durable before this returns; the response never waits for
    synthesis.
    """
    message = _require_text(body.message, "message")
    voice = _require_text(body.voice, "voice")
    if body.requester_id is None:
        raise InvalidInputError("Field 'requester_id' is required")
    if body.creator_id is None:
        raise InvalidInputError("Field 'creator_id' is required")
    if not can_submit_as(user, body.requester_id):
        raise ForbiddenError("Cannot submit requests on behalf of another user")

    tts_request = await store.create(
        requester_id=body.requester_id,
        creator_id=body.creator_id,
        message=message,
        voice=voice,
    )
    assert tts_request.id is not None
    request_log = logger.bind(request_id=tts_request.id, creator_id=tts_request.creator_id)
    hub.publish(event_for(tts_request))

    job = SynthesisJob(
        request_id=tts_request.id,
        message=message,
        voice=voice,
        use_remote_storage=services.use_remote_storage(),
    )
    try:
        queued = await queue.enqueue(job, services.retry_policy)
    except QueueUnavailableError:
        request_log.error("Job queue unreachable, failing request")
        await fail_request(store, hub, tts_request.id, QUEUE_UNAVAILABLE_REASON)
        raise

    if await store.transition(tts_request.id, RequestStatus.processing):
        tts_request.status = RequestStatus.processing
        hub.publish(event_for(tts_request))

    request_log.info(f"Queued {queued.job_id} ({len(message)} chars, voice={voice})")
    await log_event(
        "request_submitted",
        job_id=queued.job_id,
        request_id=tts_request.id,
        creator_id=tts_request.creator_id,
        requester_id=tts_request.requester_id,
    )
    return TTSSubmitResponse(request_id=tts_request.id, status=RequestStatus.pending)


@router.get("/tts")
async def list_my_requests(
    user: AuthenticatedUser,
    store: RequestStoreDep,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> TTSRequestPage:
    assert user.id is not None
    rows, total = await store.list_for_requester(user.id, page, limit)
    return _page(rows, total, page, limit)


@router.get("/tts/voices")
async def list_voices() -> list[VoiceRead]:
    return [VoiceRead(**voice) for voice in VOICES]


@router.get("/tts/creator/{creator_id}")
async def list_creator_requests(
    creator_id: int,
    user: AuthenticatedUser,
    store: RequestStoreDep,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> TTSRequestPage:
    if not can_view_creator(user, creator_id):
        raise ResourceNotFoundError(Creator.__name__, creator_id)
    rows, total = await store.list_for_creator(creator_id, page, limit)
    return _page(rows, total, page, limit)


@router.get("/tts/{request_id}")
async def get_tts_status(tts_request: CurrentTTSRequest) -> TTSStatusResponse:
    assert tts_request.id is not None
    return TTSStatusResponse(
        request_id=tts_request.id,
        status=tts_request.status,
        audio_url=tts_request.audio_url,
    )


@router.get("/tts/{request_id}/download")
async def download_tts_audio(
    tts_request: CurrentTTSRequest,
    artifacts: ArtifactStoreDep,
    settings: SettingsDep,
) -> StreamingResponse:
    """Stream the finished audio as an MP3 attachment."""
    assert tts_request.id is not None
    if tts_request.status != RequestStatus.completed or not tts_request.audio_url:
        raise NotReadyError(tts_request.id, tts_request.status, settings.download_retry_after_s)

    # read the first chunk up front so a missing artifact fails before headers are sent
    try:
        chunks = artifacts.stream(tts_request.audio_url)
        first = await anext(chunks, b"")
    except StorageError as e:
        logger.bind(request_id=tts_request.id).error(f"Artifact unreadable: {e}")
        raise ResourceNotFoundError(
            "Audio", tts_request.id, message=f"Audio for request {tts_request.id} is no longer available"
        ) from e

    async def body():
        if first:
            yield first
        async for chunk in chunks:
            yield chunk

    return StreamingResponse(
        body(),
        media_type="audio/mpeg",
        headers={"Content-Disposition": f'attachment; filename="audio-{tts_request.id}.mp3"'},
    )
