"""Durable Redis job queue shared by the gateway (producer) and the workers.

Layout (see voicetip.contracts):
    tts:jobs                    hash: job_id -> QueuedJob (payload + attempts)
    tts:queue                   list of ready job ids, LPUSH in / LMOVE out of the right end
    tts:delayed                 sorted set: job_id -> ready_at, for backoff
    tts:processing:{worker_id}  list of job ids a worker has taken
    tts:claims                  hash: job_id -> ClaimRecord

LMOVE puts the id into the worker's processing list atomically, so a crash
right after taking a job leaves evidence the visibility scanner can act on.
HSETNX on tts:claims is the single point deciding which worker holds a job.
ack, retry and dead only act while the stored ClaimRecord is still the
caller's own, so a worker whose claim was recovered cannot undo its successor.
"""

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum, auto
from typing import Any, Protocol

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from voicetip.contracts import (
    TTS_CLAIMS,
    TTS_DELAYED,
    TTS_DLQ,
    TTS_JOBS,
    TTS_PROCESSING,
    TTS_QUEUE,
    ClaimRecord,
    QueuedJob,
    SynthesisJob,
)
from voicetip.gateway.exceptions import QueueUnavailableError
from voicetip.gateway.metrics import log_event
from voicetip.workers.retry import RetryPolicy

DLQ_TTL_SECONDS = 7 * 24 * 3600  # 7 days
PROMOTE_BATCH = 100


class QueueEvent(StrEnum):
    added = auto()
    started = auto()
    completed = auto()
    failed = auto()  # one attempt failed, job scheduled again
    stalled = auto()
    dead = auto()


class QueueObserver(Protocol):
    async def on_event(self, event: QueueEvent, job: QueuedJob, **data: Any) -> None: ...


class LoggingQueueObserver:
    """Writes queue lifecycle events to the log and the metrics event table."""

    async def on_event(self, event: QueueEvent, job: QueuedJob, **data: Any) -> None:
        job_log = logger.bind(job_id=job.job_id, request_id=job.job.request_id, attempt=job.attempts)
        if event in (QueueEvent.failed, QueueEvent.stalled):
            job_log.warning(f"Job {event}: {data}")
        elif event == QueueEvent.dead:
            job_log.error(f"Job dead after {job.attempts} attempts: {data.get('reason')}")
        else:
            job_log.info(f"Job {event}")

        await log_event(
            f"job_{event}",
            job_id=job.job_id,
            request_id=job.job.request_id,
            attempt=job.attempts,
            worker_id=data.pop("worker_id", None),
            queue_wait_ms=data.pop("queue_wait_ms", None),
            data=data or None,
        )


@dataclass
class ClaimedJob:
    """A job held by one worker until it is acked, retried or declared dead."""

    queued: QueuedJob
    worker_id: str
    claimed_at: float

    @property
    def job(self) -> SynthesisJob:
        return self.queued.job

    @property
    def job_id(self) -> str:
        return self.queued.job_id

    @property
    def attempts(self) -> int:
        return self.queued.attempts

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.queued.max_attempts,
            backoff_delay_ms=self.queued.backoff_delay_ms,
            max_backoff_delay_ms=self.queued.max_backoff_delay_ms,
        )

    @property
    def claim(self) -> ClaimRecord:
        return ClaimRecord(worker_id=self.worker_id, claimed_at=self.claimed_at)

    @property
    def processing_key(self) -> str:
        return TTS_PROCESSING.format(worker_id=self.worker_id)

    @property
    def queue_wait_ms(self) -> int:
        return max(0, int((self.claimed_at - self.queued.queued_at) * 1000))


@dataclass
class StalledJob:
    """A claim that outlived the visibility timeout and was released by the scanner."""

    queued: QueuedJob
    worker_id: str
    stalled_for_s: float
    requeued: bool  # False: attempts exhausted, job moved to the DLQ


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


class JobQueue:
    def __init__(self, redis: Redis, observer: QueueObserver | None = None):
        self._redis = redis
        self._observer = observer or LoggingQueueObserver()

    async def _emit(self, event: QueueEvent, job: QueuedJob, **data: Any) -> None:
        try:
            await self._observer.on_event(event, job, **data)
        except Exception as e:
            logger.exception(f"Queue observer failed on {event} for {job.job_id}: {e}")

    async def enqueue(self, job: SynthesisJob, policy: RetryPolicy, delay_ms: int = 0) -> QueuedJob:
        """Record the job durably and make it available to workers.

        Raises:
            QueueUnavailableError: Redis could not be reached.
        """
        queued = QueuedJob(
            job_id=job.job_id,
            job=job,
            max_attempts=policy.max_attempts,
            backoff_delay_ms=policy.backoff_delay_ms,
            max_backoff_delay_ms=policy.max_backoff_delay_ms,
        )
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(TTS_JOBS, queued.job_id, queued.model_dump_json())
                self._schedule(pipe, queued.job_id, delay_ms)
                await pipe.execute()
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            raise QueueUnavailableError(f"Job queue unavailable: {e}") from e

        await self._emit(QueueEvent.added, queued, delay_ms=delay_ms)
        return queued

    def _schedule(self, pipe: Any, job_id: str, delay_ms: int) -> None:
        if delay_ms > 0:
            pipe.zadd(TTS_DELAYED, {job_id: time.time() + delay_ms / 1000})
        else:
            pipe.lpush(TTS_QUEUE, job_id)

    async def _promote_due(self) -> int:
        """Move delayed jobs whose backoff has elapsed onto the ready list."""
        due = await self._redis.zrangebyscore(TTS_DELAYED, "-inf", time.time(), start=0, num=PROMOTE_BATCH)
        promoted = 0
        for job_id in due:
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(TTS_DELAYED)
                    if await pipe.zscore(TTS_DELAYED, job_id) is None:
                        continue  # another worker promoted it
                    pipe.multi()
                    pipe.zrem(TTS_DELAYED, job_id)
                    pipe.lpush(TTS_QUEUE, job_id)
                    await pipe.execute()
                    promoted += 1
            except WatchError:
                continue
        return promoted

    async def claim(self, worker_id: str) -> ClaimedJob | None:
        """Take the oldest ready job for `worker_id`, or None if nothing is ready."""
        await self._promote_due()

        processing_key = TTS_PROCESSING.format(worker_id=worker_id)
        raw_id = await self._redis.lmove(TTS_QUEUE, processing_key, "RIGHT", "LEFT")
        if raw_id is None:
            return None
        job_id = _decode(raw_id)

        now = time.time()
        claim = ClaimRecord(worker_id=worker_id, claimed_at=now)
        if not await self._redis.hsetnx(TTS_CLAIMS, job_id, claim.model_dump_json()):
            existing = await self._redis.hget(TTS_CLAIMS, job_id)
            holder = ClaimRecord.model_validate_json(existing).worker_id if existing else None
            if holder != worker_id:
                # duplicate delivery of a job someone else holds
                await self._redis.lrem(processing_key, 1, job_id)
                logger.bind(job_id=job_id, worker_id=worker_id).debug(f"Job already claimed by {holder}, dropped")
                return None
            # the scanner registered our claim before we did
            await self._redis.hset(TTS_CLAIMS, job_id, claim.model_dump_json())

        raw_job = await self._redis.hget(TTS_JOBS, job_id)
        if raw_job is None:
            logger.bind(job_id=job_id).debug("Job finished before it could be processed")
            await self._release(processing_key, job_id)
            return None

        queued = QueuedJob.model_validate_json(raw_job)
        queued = queued.model_copy(update={"attempts": queued.attempts + 1})
        await self._redis.hset(TTS_JOBS, job_id, queued.model_dump_json())

        claimed = ClaimedJob(queued=queued, worker_id=worker_id, claimed_at=now)
        await self._emit(QueueEvent.started, queued, worker_id=worker_id, queue_wait_ms=claimed.queue_wait_ms)
        return claimed

    async def _release(self, processing_key: str, job_id: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(processing_key, 1, job_id)
            pipe.hdel(TTS_CLAIMS, job_id)
            await pipe.execute()

    async def holds(self, claimed: ClaimedJob) -> bool:
        """Whether `claimed` is still the live claim on its job."""
        raw_claim = await self._redis.hget(TTS_CLAIMS, claimed.job_id)
        return raw_claim is not None and ClaimRecord.model_validate_json(raw_claim) == claimed.claim

    async def _settle(self, claimed: ClaimedJob, action: str, apply: Callable[[Any], None]) -> bool:
        """Release `claimed` and queue `apply`'s commands in the same transaction.

        Nothing but the worker's own processing entry is touched once the claim
        has been released by the scanner or taken over by another worker.
        """
        while True:
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(TTS_CLAIMS)
                    raw_claim = await pipe.hget(TTS_CLAIMS, claimed.job_id)
                    held = raw_claim is not None and ClaimRecord.model_validate_json(raw_claim) == claimed.claim

                    pipe.multi()
                    pipe.lrem(claimed.processing_key, 1, claimed.job_id)
                    if held:
                        pipe.hdel(TTS_CLAIMS, claimed.job_id)
                        apply(pipe)
                    await pipe.execute()
            except WatchError:
                continue

            if not held:
                logger.bind(job_id=claimed.job_id, worker_id=claimed.worker_id).warning(
                    f"Claim on {claimed.job_id} was lost before {action}, ignored"
                )
            return held

    async def ack(self, claimed: ClaimedJob) -> bool:
        """Job is done (successfully or skipped): forget it.

        Returns False if the claim was lost, in which case the job is left to its current holder.
        """
        if not await self._settle(claimed, "ack", lambda pipe: pipe.hdel(TTS_JOBS, claimed.job_id)):
            return False
        await self._emit(QueueEvent.completed, claimed.queued, worker_id=claimed.worker_id)
        return True

    async def retry(self, claimed: ClaimedJob, delay_ms: int, error: str) -> bool:
        """Release the claim and schedule the job again after `delay_ms`."""

        def reschedule(pipe: Any) -> None:
            pipe.hset(TTS_JOBS, claimed.job_id, claimed.queued.model_dump_json())
            self._schedule(pipe, claimed.job_id, delay_ms)

        if not await self._settle(claimed, "retry", reschedule):
            return False
        await self._emit(
            QueueEvent.failed, claimed.queued, worker_id=claimed.worker_id, error=error, retry_in_ms=delay_ms
        )
        return True

    async def dead(self, claimed: ClaimedJob, reason: str) -> bool:
        """Release the claim and move the job to the dead letter queue."""
        if not await self._settle(claimed, "dead", lambda pipe: self._bury(pipe, claimed.queued, reason)):
            return False
        await self._emit(QueueEvent.dead, claimed.queued, worker_id=claimed.worker_id, reason=reason)
        return True

    def _bury(self, pipe: Any, queued: QueuedJob, reason: str) -> None:
        """DLQ expires 7 days after the last entry."""
        entry = json.dumps(
            {
                "job_id": queued.job_id,
                "job": queued.model_dump(mode="json"),
                "reason": reason,
                "moved_at": time.time(),
            }
        )
        pipe.hdel(TTS_JOBS, queued.job_id)
        pipe.lpush(TTS_DLQ, entry)
        pipe.expire(TTS_DLQ, DLQ_TTL_SECONDS)

    async def recover_stalled(self, stall_timeout_s: float) -> list[StalledJob]:
        """Release claims older than `stall_timeout_s`.

        A stalled job whose attempts are not exhausted goes back on the ready
        list; otherwise it is moved to the DLQ and the caller must fail the
        request.
        """
        stalled: list[StalledJob] = []
        cursor = 0
        while True:
            cursor, keys = await self._redis.scan(cursor, match=TTS_PROCESSING.format(worker_id="*"), count=100)
            for key in keys:
                stalled.extend(await self._check_processing_list(_decode(key), stall_timeout_s))
            if cursor == 0:
                break
        return stalled

    async def _check_processing_list(self, processing_key: str, stall_timeout_s: float) -> list[StalledJob]:
        worker_id = processing_key.removeprefix(TTS_PROCESSING.format(worker_id=""))
        stalled: list[StalledJob] = []

        for raw_id in await self._redis.lrange(processing_key, 0, -1):
            job_id = _decode(raw_id)
            now = time.time()
            raw_claim = await self._redis.hget(TTS_CLAIMS, job_id)

            if raw_claim is None:
                # worker died between LMOVE and HSETNX: start the clock now
                observed = ClaimRecord(worker_id=worker_id, claimed_at=now)
                await self._redis.hsetnx(TTS_CLAIMS, job_id, observed.model_dump_json())
                continue

            claim = ClaimRecord.model_validate_json(raw_claim)
            if claim.worker_id != worker_id:
                # leftover duplicate of a job held by another worker
                await self._redis.lrem(processing_key, 1, job_id)
                continue

            age = now - claim.claimed_at
            if age < stall_timeout_s:
                continue

            result = await self._release_stalled(processing_key, job_id, raw_claim)
            if result is None:
                continue
            queued, requeued = result
            stalled.append(StalledJob(queued=queued, worker_id=worker_id, stalled_for_s=age, requeued=requeued))
            await self._emit(
                QueueEvent.stalled, queued, worker_id=worker_id, stalled_for_s=round(age, 1), requeued=requeued
            )

        return stalled

    async def _release_stalled(
        self, processing_key: str, job_id: str, raw_claim: bytes
    ) -> tuple[QueuedJob, bool] | None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(TTS_CLAIMS, TTS_JOBS)
                if await pipe.hget(TTS_CLAIMS, job_id) != raw_claim:
                    return None  # acked or re-claimed meanwhile
                raw_job = await pipe.hget(TTS_JOBS, job_id)

                pipe.multi()
                pipe.lrem(processing_key, 1, job_id)
                pipe.hdel(TTS_CLAIMS, job_id)
                if raw_job is None:
                    await pipe.execute()
                    return None

                queued = QueuedJob.model_validate_json(raw_job)
                requeued = queued.attempts < queued.max_attempts
                if requeued:
                    pipe.lpush(TTS_QUEUE, job_id)
                else:
                    self._bury(pipe, queued, f"stalled after {queued.attempts} attempts")
                await pipe.execute()
                return queued, requeued
        except WatchError:
            return None

    async def depth(self) -> int:
        """Jobs waiting to be processed, ready or delayed."""
        ready = await self._redis.llen(TTS_QUEUE)
        delayed = await self._redis.zcard(TTS_DELAYED)
        return ready + delayed
