"""Scans for stuck jobs and re-queues them or fails their request.

A worker that crashes or hangs keeps its claim forever. Claims older than the
stall timeout are released: the job goes back on the ready list, or, when its
attempts are spent, to the DLQ and the request is marked failed.
"""

import asyncio

from loguru import logger

from voicetip.gateway.metrics import log_error
from voicetip.gateway.notifications import NotificationHub
from voicetip.gateway.request_store import RequestStore
from voicetip.workers.pool import fail_request
from voicetip.workers.queue import JobQueue, StalledJob


async def run_visibility_scanner(
    queue: JobQueue,
    store: RequestStore,
    hub: NotificationHub,
    stall_timeout_s: int,
    scan_interval_s: int,
    name: str = "visibility",
) -> None:
    """Run the visibility timeout scanner until cancelled.

    Args:
        queue: Job queue whose processing lists are scanned
        store: Request store used to fail requests of dead jobs
        hub: Notification hub for the resulting `failed` events
        stall_timeout_s: Seconds before a claimed job is considered stuck
        scan_interval_s: Seconds between scans
        name: Name for logging
    """
    logger.info(f"{name} scanner starting (timeout={stall_timeout_s}s, interval={scan_interval_s}s)")

    while True:
        try:
            await scan_once(queue, store, hub, stall_timeout_s)
            await asyncio.sleep(scan_interval_s)
        except asyncio.CancelledError:
            logger.info(f"{name} scanner shutting down")
            raise
        except Exception as e:
            logger.exception(f"Error in {name} scanner: {e}")
            await log_error(f"Visibility scanner {name} loop error: {e}")
            await asyncio.sleep(scan_interval_s)


async def scan_once(
    queue: JobQueue,
    store: RequestStore,
    hub: NotificationHub,
    stall_timeout_s: float,
) -> list[StalledJob]:
    stalled = await queue.recover_stalled(stall_timeout_s)
    for job in stalled:
        request_id = job.queued.job.request_id
        if job.requeued:
            logger.bind(job_id=job.queued.job_id, request_id=request_id).warning(
                f"Job stuck on {job.worker_id} for {job.stalled_for_s:.1f}s, requeued "
                f"(attempt {job.queued.attempts}/{job.queued.max_attempts})"
            )
            continue
        reason = f"Processing stalled after {job.queued.attempts} attempts"
        await fail_request(store, hub, request_id, reason)
    return stalled
