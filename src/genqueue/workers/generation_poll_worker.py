"""Out-of-band poller for active generation jobs.

Each cycle first expires jobs older than JOB_TIMEOUT_SECONDS (FAILED with a
refund), then polls one batch of active jobs, least recently updated first.

Polling is idempotent (a terminal job is never touched again, a refund is keyed
by job id), so batches are not claimed with row locks: if a synchronous waiter
polls the same job concurrently, the second writer sees the terminal state and
stops.
"""

import asyncio

import structlog

from genqueue.core.config import Settings
from genqueue.services.orchestrator import GenerationOrchestrator

logger = structlog.get_logger(__name__)


async def process_batch(orchestrator: GenerationOrchestrator, settings: Settings) -> int:
    """Run one expiry pass and one poll batch.

    Returns:
        Number of jobs polled
    """
    expired = await orchestrator.expire_stale_jobs(settings.job_timeout_seconds)
    if expired:
        logger.info("worker.jobs_expired", count=len(expired))

    return await orchestrator.poll_active_jobs(limit=settings.worker_batch_size)


async def run_generation_poll_worker(
    orchestrator: GenerationOrchestrator,
    settings: Settings,
) -> None:
    """Main worker loop for job polling.

    Polls at POLL_INTERVAL_SECONDS and handles graceful shutdown.

    Args:
        orchestrator: Generation orchestrator (owns the poll state machine)
        settings: Application settings (poll interval, batch size, job timeout)
    """
    logger.info(
        "worker.started",
        poll_interval=settings.poll_interval_seconds,
        batch_size=settings.worker_batch_size,
        job_timeout=settings.job_timeout_seconds,
    )

    try:
        while True:
            try:
                await process_batch(orchestrator, settings)
                await asyncio.sleep(settings.poll_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                # Back off 5 seconds before retrying
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped")
        raise
