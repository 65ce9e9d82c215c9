"""Tests for the Redis job queue: claiming, retry scheduling, DLQ and stall recovery."""

import json
from typing import Any

import fakeredis
import pytest

from voicetip.contracts import TTS_CLAIMS, TTS_DELAYED, TTS_DLQ, TTS_JOBS, TTS_PROCESSING, TTS_QUEUE, SynthesisJob
from voicetip.gateway.exceptions import QueueUnavailableError
from voicetip.workers.queue import DLQ_TTL_SECONDS, JobQueue, QueueEvent
from voicetip.workers.retry import RetryPolicy


def make_job(request_id: int = 42) -> SynthesisJob:
    return SynthesisJob(request_id=request_id, message="hello", voice="v1", use_remote_storage=False)


class RecordingObserver:
    def __init__(self):
        self.events: list[tuple[QueueEvent, str, dict[str, Any]]] = []

    async def on_event(self, event, job, **data):
        self.events.append((event, job.job_id, data))


class TestEnqueueAndClaim:
    @pytest.mark.asyncio
    async def test_claim_returns_enqueued_job(self, queue):
        await queue.enqueue(make_job(), RetryPolicy())

        claimed = await queue.claim("w-0")

        assert claimed is not None
        assert claimed.job_id == "tts-42"
        assert claimed.job.message == "hello"
        assert claimed.attempts == 1
        assert claimed.worker_id == "w-0"

    @pytest.mark.asyncio
    async def test_claim_empty_queue_returns_none(self, queue):
        assert await queue.claim("w-0") is None

    @pytest.mark.asyncio
    async def test_policy_travels_with_job(self, queue):
        await queue.enqueue(make_job(), RetryPolicy(max_attempts=5, backoff_delay_ms=100, max_backoff_delay_ms=800))

        claimed = await queue.claim("w-0")

        assert claimed is not None
        assert claimed.policy == RetryPolicy(max_attempts=5, backoff_delay_ms=100, max_backoff_delay_ms=800)

    @pytest.mark.asyncio
    async def test_fifo_order(self, queue):
        for request_id in (1, 2, 3):
            await queue.enqueue(make_job(request_id), RetryPolicy())

        claimed = [await queue.claim("w-0") for _ in range(3)]

        assert [c.job.request_id for c in claimed] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_at_most_one_claim_per_job(self, queue, redis_client):
        await queue.enqueue(make_job(), RetryPolicy())
        # duplicate delivery of the same id
        await redis_client.lpush(TTS_QUEUE, "tts-42")

        first = await queue.claim("w-0")
        second = await queue.claim("w-1")

        assert first is not None
        assert second is None
        assert await redis_client.llen(TTS_PROCESSING.format(worker_id="w-1")) == 0
        claim = json.loads(await redis_client.hget(TTS_CLAIMS, "tts-42"))
        assert claim["worker_id"] == "w-0"

    @pytest.mark.asyncio
    async def test_delayed_enqueue_not_claimable_until_due(self, queue, redis_client):
        await queue.enqueue(make_job(), RetryPolicy(), delay_ms=60_000)

        assert await queue.claim("w-0") is None
        assert await queue.depth() == 1

        await redis_client.zadd(TTS_DELAYED, {"tts-42": 0})
        claimed = await queue.claim("w-0")

        assert claimed is not None
        assert await redis_client.zcard(TTS_DELAYED) == 0

    @pytest.mark.asyncio
    async def test_unreachable_redis_raises_queue_unavailable(self):
        server = fakeredis.FakeServer()
        server.connected = False
        queue = JobQueue(fakeredis.FakeAsyncRedis(server=server))

        with pytest.raises(QueueUnavailableError):
            await queue.enqueue(make_job(), RetryPolicy())


class TestAckRetryDead:
    @pytest.mark.asyncio
    async def test_ack_forgets_job(self, queue, redis_client):
        await queue.enqueue(make_job(), RetryPolicy())
        claimed = await queue.claim("w-0")

        await queue.ack(claimed)

        assert await redis_client.hlen(TTS_JOBS) == 0
        assert await redis_client.hlen(TTS_CLAIMS) == 0
        assert await redis_client.llen(claimed.processing_key) == 0
        assert await queue.depth() == 0

    @pytest.mark.asyncio
    async def test_retry_keeps_attempt_count(self, queue):
        await queue.enqueue(make_job(), RetryPolicy())
        claimed = await queue.claim("w-0")

        await queue.retry(claimed, delay_ms=0, error="boom")
        again = await queue.claim("w-1")

        assert again is not None
        assert again.attempts == 2

    @pytest.mark.asyncio
    async def test_retry_with_backoff_goes_to_delayed_set(self, queue, redis_client):
        await queue.enqueue(make_job(), RetryPolicy())
        claimed = await queue.claim("w-0")

        await queue.retry(claimed, delay_ms=5000, error="boom")

        assert await redis_client.zscore(TTS_DELAYED, "tts-42") is not None
        assert await queue.claim("w-0") is None
        assert await redis_client.hlen(TTS_CLAIMS) == 0

    @pytest.mark.asyncio
    async def test_dead_moves_job_to_dlq(self, queue, redis_client):
        await queue.enqueue(make_job(), RetryPolicy())
        claimed = await queue.claim("w-0")

        await queue.dead(claimed, "TTS API returned 400: bad voice")

        entries = await redis_client.lrange(TTS_DLQ, 0, -1)
        assert len(entries) == 1
        entry = json.loads(entries[0])
        assert entry["job_id"] == "tts-42"
        assert entry["reason"] == "TTS API returned 400: bad voice"
        assert 0 < await redis_client.ttl(TTS_DLQ) <= DLQ_TTL_SECONDS
        assert await redis_client.hlen(TTS_JOBS) == 0
        assert await queue.depth() == 0


class TestObserver:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self, redis_client):
        observer = RecordingObserver()
        queue = JobQueue(redis_client, observer=observer)

        await queue.enqueue(make_job(), RetryPolicy())
        claimed = await queue.claim("w-0")
        await queue.retry(claimed, delay_ms=0, error="boom")
        claimed = await queue.claim("w-0")
        await queue.ack(claimed)

        assert [event for event, _, _ in observer.events] == [
            QueueEvent.added,
            QueueEvent.started,
            QueueEvent.failed,
            QueueEvent.started,
            QueueEvent.completed,
        ]
        assert observer.events[2][2]["error"] == "boom"

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_break_queue(self, redis_client):
        class Broken:
            async def on_event(self, event, job, **data):
                raise RuntimeError("observer down")

        queue = JobQueue(redis_client, observer=Broken())

        await queue.enqueue(make_job(), RetryPolicy())
        assert await queue.claim("w-0") is not None


class TestRecoverStalled:
    @pytest.mark.asyncio
    async def test_fresh_claims_are_left_alone(self, queue):
        await queue.enqueue(make_job(), RetryPolicy())
        await queue.claim("w-0")

        assert await queue.recover_stalled(stall_timeout_s=120) == []

    @pytest.mark.asyncio
    async def test_stalled_job_is_requeued(self, queue, redis_client):
        await queue.enqueue(make_job(), RetryPolicy())
        claimed = await queue.claim("w-0")

        stalled = await queue.recover_stalled(stall_timeout_s=0)

        assert len(stalled) == 1
        assert stalled[0].requeued
        assert stalled[0].worker_id == "w-0"
        assert await redis_client.llen(claimed.processing_key) == 0

        again = await queue.claim("w-1")
        assert again is not None
        assert again.attempts == 2

    @pytest.mark.asyncio
    async def test_stall_on_last_attempt_goes_to_dlq(self, queue, redis_client):
        await queue.enqueue(make_job(), RetryPolicy(max_attempts=1))
        await queue.claim("w-0")

        stalled = await queue.recover_stalled(stall_timeout_s=0)

        assert len(stalled) == 1
        assert not stalled[0].requeued
        assert await redis_client.llen(TTS_DLQ) == 1
        assert await queue.claim("w-1") is None

    @pytest.mark.asyncio
    async def test_crash_before_claim_is_recovered(self, queue, redis_client):
        """A worker that died right after taking the id never wrote its claim."""
        await queue.enqueue(make_job(), RetryPolicy())
        processing_key = TTS_PROCESSING.format(worker_id="w-dead")
        await redis_client.lmove(TTS_QUEUE, processing_key, "RIGHT", "LEFT")

        # first pass only starts the clock
        assert await queue.recover_stalled(stall_timeout_s=0) == []
        assert await redis_client.hexists(TTS_CLAIMS, "tts-42")

        stalled = await queue.recover_stalled(stall_timeout_s=0)
        assert len(stalled) == 1
        assert stalled[0].requeued

        claimed = await queue.claim("w-1")
        assert claimed is not None
        assert claimed.attempts == 1

    @pytest.mark.asyncio
    async def test_acked_job_is_not_recovered(self, queue):
        await queue.enqueue(make_job(), RetryPolicy())
        claimed = await queue.claim("w-0")
        await queue.ack(claimed)

        assert await queue.recover_stalled(stall_timeout_s=0) == []


class TestRecoveredClaim:
    """A worker whose claim the scanner recovered finishes late, after another worker took the job."""

    @pytest.mark.asyncio
    async def test_late_retry_leaves_new_holder_alone(self, queue, redis_client):
        await queue.enqueue(make_job(), RetryPolicy())
        slow = await queue.claim("w-A")
        await queue.recover_stalled(stall_timeout_s=0)
        current = await queue.claim("w-B")
        assert current.attempts == 2

        assert not await queue.retry(slow, delay_ms=0, error="late timeout")

        assert await queue.claim("w-C") is None
        assert await queue.holds(current)
        assert await queue.depth() == 0
        claim = json.loads(await redis_client.hget(TTS_CLAIMS, "tts-42"))
        assert claim["worker_id"] == "w-B"
        stored = json.loads(await redis_client.hget(TTS_JOBS, "tts-42"))
        assert stored["attempts"] == 2

    @pytest.mark.asyncio
    async def test_late_ack_keeps_job(self, queue, redis_client):
        await queue.enqueue(make_job(), RetryPolicy())
        slow = await queue.claim("w-A")
        await queue.recover_stalled(stall_timeout_s=0)
        current = await queue.claim("w-B")

        assert not await queue.ack(slow)

        assert await redis_client.hexists(TTS_JOBS, "tts-42")
        assert await queue.holds(current)
        assert await queue.ack(current)
        assert await redis_client.hlen(TTS_JOBS) == 0
        assert await redis_client.hlen(TTS_CLAIMS) == 0

    @pytest.mark.asyncio
    async def test_late_dead_does_not_bury(self, queue, redis_client):
        await queue.enqueue(make_job(), RetryPolicy())
        slow = await queue.claim("w-A")
        await queue.recover_stalled(stall_timeout_s=0)
        await queue.claim("w-B")

        assert not await queue.dead(slow, "TTS API returned 400: bad voice")

        assert await redis_client.llen(TTS_DLQ) == 0
        assert await redis_client.hexists(TTS_JOBS, "tts-42")

    @pytest.mark.asyncio
    async def test_late_retry_while_job_waits_in_queue(self, queue):
        await queue.enqueue(make_job(), RetryPolicy())
        slow = await queue.claim("w-A")
        await queue.recover_stalled(stall_timeout_s=0)

        assert not await queue.retry(slow, delay_ms=0, error="late timeout")

        assert await queue.depth() == 1
        claimed = await queue.claim("w-B")
        assert claimed.attempts == 2
        assert await queue.claim("w-C") is None

    @pytest.mark.asyncio
    async def test_late_settle_emits_nothing(self, redis_client):
        observer = RecordingObserver()
        queue = JobQueue(redis_client, observer=observer)
        await queue.enqueue(make_job(), RetryPolicy())
        slow = await queue.claim("w-A")
        await queue.recover_stalled(stall_timeout_s=0)

        await queue.retry(slow, delay_ms=0, error="late timeout")

        assert [event for event, _, _ in observer.events] == [QueueEvent.added, QueueEvent.started, QueueEvent.stalled]
