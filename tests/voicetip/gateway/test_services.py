import pytest

from voicetip.gateway.services import Services
from voicetip.workers.retry import RetryPolicy


@pytest.mark.asyncio
async def test_init_and_shutdown_with_embedded_workers(settings, redis_client, synthesizer):
    services = Services(settings, redis_client=redis_client, synthesizer=synthesizer)

    await services.init(run_scanner=True, run_workers=True)
    try:
        assert synthesizer.initialized
        assert services.pool is not None
        assert len(services.pool.worker_ids()) == settings.worker_concurrency
        assert services.retry_policy == RetryPolicy(max_attempts=3, backoff_delay_ms=0)
        # S3 is not configured, so artifacts stay local
        assert not services.use_remote_storage()
    finally:
        await services.shutdown()

    assert services.pool is None
    assert await redis_client.ping()
