"""Pull-based TTS workers: claim a job, synthesize, store the artifact, record the result."""

import asyncio
import time
import uuid

from loguru import logger

from voicetip.gateway.domain_models import RequestStatus
from voicetip.gateway.exceptions import StorageError, SynthesisError
from voicetip.gateway.metrics import log_event
from voicetip.gateway.notifications import NotificationHub, event_for
from voicetip.gateway.request_store import RequestStore
from voicetip.gateway.storage import ArtifactStore
from voicetip.workers.queue import ClaimedJob, JobQueue
from voicetip.workers.synthesis import SynthesisClient


async def fail_request(store: RequestStore, hub: NotificationHub, request_id: int, reason: str) -> bool:
    """Move a request to `failed` and tell its creator room. Returns False if it was already terminal."""
    if not await store.transition(request_id, RequestStatus.failed, error=reason):
        return False
    request = await store.get(request_id)
    if request is not None:
        hub.publish(event_for(request))
    return True


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        store: RequestStore,
        artifacts: ArtifactStore,
        synthesizer: SynthesisClient,
        hub: NotificationHub,
        *,
        concurrency: int = 2,
        synthesis_timeout_s: float = 30.0,
        storage_timeout_s: float = 30.0,
        poll_interval_s: float = 0.5,
        name: str | None = None,
    ):
        self.queue = queue
        self.store = store
        self.artifacts = artifacts
        self.synthesizer = synthesizer
        self.hub = hub
        self.concurrency = concurrency
        self.synthesis_timeout_s = synthesis_timeout_s
        self.storage_timeout_s = storage_timeout_s
        self.poll_interval_s = poll_interval_s
        self.name = name or uuid.uuid4().hex[:8]
        self._tasks: list[asyncio.Task[None]] = []

    def worker_ids(self) -> list[str]:
        return [f"{self.name}-{i}" for i in range(self.concurrency)]

    async def start(self) -> None:
        if self._tasks:
            return
        logger.info(f"Worker pool {self.name} starting {self.concurrency} workers")
        self._tasks = [asyncio.create_task(self._run_worker(worker_id)) for worker_id in self.worker_ids()]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"Worker pool {self.name} stopped")

    async def _run_worker(self, worker_id: str) -> None:
        logger.info(f"TTS worker {worker_id} starting")
        try:
            while True:
                try:
                    processed = await self.process_next(worker_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # the claim, if any, is recovered by the visibility scanner
                    logger.exception(f"Worker {worker_id} loop error: {e}")
                    processed = False
                if not processed:
                    await asyncio.sleep(self.poll_interval_s)
        except asyncio.CancelledError:
            logger.info(f"TTS worker {worker_id} shutting down")
            raise

    async def process_next(self, worker_id: str) -> bool:
        """Claim and process one job. Returns False if no job was ready."""
        claimed = await self.queue.claim(worker_id)
        if claimed is None:
            return False
        await self.process(claimed)
        return True

    async def process(self, claimed: ClaimedJob) -> None:
        job = claimed.job
        job_log = logger.bind(
            job_id=claimed.job_id,
            request_id=job.request_id,
            worker_id=claimed.worker_id,
            attempt=claimed.attempts,
        )

        request = await self.store.get(job.request_id)
        if request is None:
            job_log.warning("Request no longer exists, dropping job")
            await self.queue.ack(claimed)
            return
        if request.status.is_terminal:
            job_log.info(f"Request already {request.status}, skipping redelivered job")
            await self.queue.ack(claimed)
            return

        if await self.store.transition(job.request_id, RequestStatus.processing):
            request.status = RequestStatus.processing
            self.hub.publish(event_for(request))

        start_time = time.time()
        try:
            audio = await self._synthesize(job.message, job.voice)
            audio_url = await self._store_artifact(job.request_id, audio, job.use_remote_storage)
        except (SynthesisError, StorageError) as e:
            await self._handle_failure(claimed, e)
            return

        processing_time_ms = int((time.time() - start_time) * 1000)

        if not await self.store.transition(job.request_id, RequestStatus.completed, audio_url=audio_url):
            # lost a race with another delivery of the same job; keep only the recorded artifact
            job_log.warning("Request reached a terminal state meanwhile, discarding new artifact")
            await self._discard_artifact(audio_url)
            await self.queue.ack(claimed)
            return

        completed = await self.store.get(job.request_id)
        if completed is not None:
            self.hub.publish(event_for(completed))
        await self.queue.ack(claimed)

        job_log.info(f"Job completed: {processing_time_ms}ms processing, {len(audio)} bytes -> {audio_url}")
        await log_event(
            "synthesis_complete",
            job_id=claimed.job_id,
            request_id=job.request_id,
            creator_id=request.creator_id,
            requester_id=request.requester_id,
            worker_id=claimed.worker_id,
            attempt=claimed.attempts,
            queue_wait_ms=claimed.queue_wait_ms,
            worker_latency_ms=processing_time_ms,
            audio_bytes=len(audio),
        )

    async def _synthesize(self, message: str, voice: str) -> bytes:
        try:
            async with asyncio.timeout(self.synthesis_timeout_s):
                return await self.synthesizer.synthesize(message, voice)
        except TimeoutError as e:
            raise SynthesisError(f"Synthesis timed out after {self.synthesis_timeout_s}s") from e

    async def _store_artifact(self, request_id: int, audio: bytes, use_remote: bool) -> str:
        try:
            async with asyncio.timeout(self.storage_timeout_s):
                return await self.artifacts.store(request_id, audio, use_remote=use_remote)
        except TimeoutError as e:
            raise StorageError(f"Storing artifact timed out after {self.storage_timeout_s}s") from e

    async def _discard_artifact(self, audio_url: str) -> None:
        try:
            await self.artifacts.delete(audio_url)
        except Exception as e:
            logger.warning(f"Could not delete orphaned artifact {audio_url}: {e}")

    async def _handle_failure(self, claimed: ClaimedJob, error: SynthesisError | StorageError) -> None:
        job = claimed.job
        reason = str(error)
        policy = claimed.policy
        job_log = logger.bind(job_id=claimed.job_id, request_id=job.request_id, worker_id=claimed.worker_id)

        if error.retryable and not policy.exhausted(claimed.attempts):
            delay_ms = policy.delay_ms(claimed.attempts)
            job_log.warning(
                f"Attempt {claimed.attempts}/{policy.max_attempts} failed: {reason}; retrying in {delay_ms}ms"
            )
            await self.queue.retry(claimed, delay_ms, reason)
            return

        if not await self.queue.holds(claimed):
            job_log.warning(f"Attempt {claimed.attempts} failed after its claim was recovered: {reason}")
            await self.queue.ack(claimed)
            return

        job_log.error(f"Job failed after {claimed.attempts} attempt(s): {reason}")
        await fail_request(self.store, self.hub, job.request_id, reason)
        await self.queue.dead(claimed, reason)
        await log_event(
            "synthesis_error",
            job_id=claimed.job_id,
            request_id=job.request_id,
            worker_id=claimed.worker_id,
            attempt=claimed.attempts,
            data={"error": reason, "retryable": error.retryable},
        )
