"""Shared handles for the gateway and worker processes.

`Services.init()` builds the database engine, Redis client, queue, hub,
artifact store and synthesis client in dependency order; `shutdown()` tears
them down in reverse. Tests pass prebuilt handles (fakeredis, a fake
synthesizer) to the constructor instead.
"""

import asyncio

import redis.asyncio as redis
from loguru import logger
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from voicetip.gateway.config import Settings
from voicetip.gateway.db import SessionFactory, create_engine, create_session_factory, prepare_database
from voicetip.gateway.metrics import init_metrics_db, start_metrics_writer, stop_metrics_writer
from voicetip.gateway.notifications import NotificationHub
from voicetip.gateway.request_store import RequestStore
from voicetip.gateway.storage import ArtifactStore, create_artifact_store
from voicetip.gateway.visibility_scanner import run_visibility_scanner
from voicetip.workers.pool import WorkerPool
from voicetip.workers.queue import JobQueue
from voicetip.workers.retry import RetryPolicy
from voicetip.workers.synthesis import ElevenLabsClient, SynthesisClient


async def create_redis_client(settings: Settings) -> Redis:
    return redis.from_url(settings.redis_url, decode_responses=False)


class Services:
    engine: AsyncEngine
    session_factory: SessionFactory
    store: RequestStore
    redis: Redis
    queue: JobQueue
    hub: NotificationHub
    artifacts: ArtifactStore
    synthesizer: SynthesisClient

    def __init__(
        self,
        settings: Settings,
        *,
        redis_client: Redis | None = None,
        synthesizer: SynthesisClient | None = None,
        artifacts: ArtifactStore | None = None,
    ):
        self.settings = settings
        self._redis_override = redis_client
        self._synthesizer_override = synthesizer
        self._artifacts_override = artifacts
        self.pool: WorkerPool | None = None
        self._scanner_task: asyncio.Task[None] | None = None
        self._metrics_started = False

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.job_max_attempts,
            backoff_delay_ms=self.settings.job_backoff_delay_ms,
            max_backoff_delay_ms=self.settings.job_max_backoff_delay_ms,
        )

    async def init(self, *, run_scanner: bool = True, run_workers: bool = False) -> None:
        settings = self.settings

        if settings.metrics_db_path is not None:
            init_metrics_db(settings.metrics_db_path)
            await start_metrics_writer()
            self._metrics_started = True

        self.engine = create_engine(settings)
        await prepare_database(self.engine, settings)
        self.session_factory = create_session_factory(self.engine)
        self.store = RequestStore(self.session_factory)

        self.redis = self._redis_override or await create_redis_client(settings)
        self.queue = JobQueue(self.redis)
        self.hub = NotificationHub(self.redis, max_pending=settings.notification_buffer_size)
        await self.hub.start()

        self.artifacts = self._artifacts_override or create_artifact_store(settings)
        if settings.use_remote_storage and self.artifacts.remote is None:
            logger.warning("Remote storage enabled but S3 is not configured, artifacts will be stored locally")

        self.synthesizer = self._synthesizer_override or ElevenLabsClient(
            api_url=settings.tts_api_url,
            api_key=settings.tts_api_key,
            default_voice_id=settings.tts_default_voice_id,
            timeout_s=settings.synthesis_timeout_s,
        )
        await self.synthesizer.initialize()

        if run_workers:
            self.pool = WorkerPool(
                self.queue,
                self.store,
                self.artifacts,
                self.synthesizer,
                self.hub,
                concurrency=settings.worker_concurrency,
                synthesis_timeout_s=settings.synthesis_timeout_s,
                storage_timeout_s=settings.storage_timeout_s,
                poll_interval_s=settings.worker_poll_interval_s,
            )
            await self.pool.start()

        if run_scanner:
            self._scanner_task = asyncio.create_task(
                run_visibility_scanner(
                    self.queue,
                    self.store,
                    self.hub,
                    stall_timeout_s=settings.stall_timeout_s,
                    scan_interval_s=settings.stall_scan_interval_s,
                )
            )

        logger.info(
            f"Services ready (workers={'on' if run_workers else 'off'}, scanner={'on' if run_scanner else 'off'})"
        )

    def use_remote_storage(self) -> bool:
        """Where new jobs should put their artifact."""
        return self.settings.use_remote_storage and self.artifacts.remote is not None

    async def shutdown(self) -> None:
        if self._scanner_task is not None:
            self._scanner_task.cancel()
            try:
                await self._scanner_task
            except asyncio.CancelledError:
                pass
            self._scanner_task = None

        if self.pool is not None:
            await self.pool.stop()
            self.pool = None

        await self.hub.stop()
        await self.synthesizer.close()
        if self._redis_override is None:
            await self.redis.aclose()
        await self.engine.dispose()

        if self._metrics_started:
            await stop_metrics_writer()
            self._metrics_started = False
        logger.info("Services shut down")
