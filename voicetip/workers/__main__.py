"""Standalone TTS worker process.

    python -m voicetip.workers

Reads the same settings as the gateway. The visibility scanner runs in the
gateway, so this process only pulls and processes jobs.
"""

import asyncio
import signal

from loguru import logger

from voicetip.gateway.config import Settings
from voicetip.gateway.logging_config import configure_logging
from voicetip.gateway.services import Services


async def main() -> None:
    settings = Settings()  # type: ignore
    configure_logging(settings.log_dir, service="worker")

    services = Services(settings)
    await services.init(run_scanner=False, run_workers=True)
    assert services.pool is not None

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info(f"Worker process running {settings.worker_concurrency} workers")
    try:
        await stop.wait()
    finally:
        await services.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
