"""Contracts for Redis keys, queues, and job processing."""

import time
from typing import Final

from pydantic import BaseModel, ConfigDict, Field

TTS_QUEUE: Final[str] = "tts:queue"  # list of ready job ids
TTS_DELAYED: Final[str] = "tts:delayed"  # sorted set: job_id -> ready_at
TTS_JOBS: Final[str] = "tts:jobs"  # hash: job_id -> QueuedJob json
TTS_CLAIMS: Final[str] = "tts:claims"  # hash: job_id -> ClaimRecord json
TTS_PROCESSING: Final[str] = "tts:processing:{worker_id}"  # list of job ids held by a worker
TTS_DLQ: Final[str] = "tts:dlq"

CREATOR_ROOM: Final[str] = "creator-room-{creator_id}"


def get_job_id(request_id: int) -> str:
    """Job ids are derived from the request so re-enqueueing the same request is idempotent."""
    return f"tts-{request_id}"


def get_creator_room(creator_id: int) -> str:
    return CREATOR_ROOM.format(creator_id=creator_id)


class SynthesisJob(BaseModel):
    """JSON contract between gateway and worker."""

    request_id: int
    message: str
    voice: str
    use_remote_storage: bool = True

    model_config = ConfigDict(frozen=True)

    @property
    def job_id(self) -> str:
        return get_job_id(self.request_id)


class QueuedJob(BaseModel):
    """A job as stored in the queue, with retry metadata assigned at enqueue time."""

    job_id: str
    job: SynthesisJob
    attempts: int = 0
    max_attempts: int = 3
    backoff_delay_ms: int = 5000
    max_backoff_delay_ms: int = 5 * 60 * 1000
    queued_at: float = Field(default_factory=time.time)


class ClaimRecord(BaseModel):
    worker_id: str
    claimed_at: float


class NotificationEvent(BaseModel):
    """Pub/sub payload pushed to a creator room after a request changes state."""

    request_id: int
    status: str
    audio_url: str | None = None
    message: str
    voice: str
    creator_id: int
    requester_id: int
    error: str | None = None

    @property
    def channel(self) -> str:
        return get_creator_room(self.creator_id)
