from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from voicetip.gateway.access import can_view_request
from voicetip.gateway.auth import authenticate
from voicetip.gateway.config import Settings, get_settings
from voicetip.gateway.domain_models import TTSRequest, User
from voicetip.gateway.exceptions import ResourceNotFoundError
from voicetip.gateway.notifications import NotificationHub
from voicetip.gateway.request_store import RequestStore
from voicetip.gateway.services import Services
from voicetip.gateway.storage import ArtifactStore
from voicetip.workers.queue import JobQueue

SettingsDep = Annotated[Settings, Depends(get_settings)]


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]


def get_request_store(services: ServicesDep) -> RequestStore:
    return services.store


def get_job_queue(services: ServicesDep) -> JobQueue:
    return services.queue


def get_notification_hub(services: ServicesDep) -> NotificationHub:
    return services.hub


def get_artifact_store(services: ServicesDep) -> ArtifactStore:
    return services.artifacts


async def get_tts_request(
    request_id: int,
    store: Annotated[RequestStore, Depends(get_request_store)],
    user: Annotated[User, Depends(authenticate)],
) -> TTSRequest:
    """Load a request the caller may see. Requests of other users look like they don't exist."""
    tts_request = await store.get(request_id)
    if tts_request is None or not can_view_request(user, tts_request):
        raise ResourceNotFoundError(TTSRequest.__name__, request_id)
    return tts_request


RequestStoreDep = Annotated[RequestStore, Depends(get_request_store)]
JobQueueDep = Annotated[JobQueue, Depends(get_job_queue)]
NotificationHubDep = Annotated[NotificationHub, Depends(get_notification_hub)]
ArtifactStoreDep = Annotated[ArtifactStore, Depends(get_artifact_store)]
CurrentTTSRequest = Annotated[TTSRequest, Depends(get_tts_request)]
AuthenticatedUser = Annotated[User, Depends(authenticate)]
