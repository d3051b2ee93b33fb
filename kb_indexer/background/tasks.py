import logging
import asyncio
from celery.exceptions import SoftTimeLimitExceeded

from kb_indexer.background.celery_worker import celery
from kb_indexer.config import settings
from kb_indexer.dependencies import build_indexing_worker

logger = logging.getLogger(__name__)


def _run_async(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@celery.task(bind=True, name='indexing_tick_task')
def indexing_tick_task(self):
    """
    Celery task that runs one poll of the indexing worker loop.
    Scheduled by beat every WORKER_POLL_INTERVAL_SECONDS; overlapping ticks are
    safe because jobs are claimed with a lease and a compare-and-swap.
    """
    worker = build_indexing_worker()
    try:
        processed = _run_async(worker.tick())
    except SoftTimeLimitExceeded:
        logger.error("Indexing tick exceeded soft time limit. Unfinished jobs will be picked up by the watchdog.", exc_info=True)
        return 0
    if processed:
        logger.info(f"Indexing tick processed {processed} jobs.")
    return processed


@celery.task(bind=True, name='watchdog_task')
def watchdog_task(self):
    """
    Celery task to periodically scan for and mark stuck indexing jobs as failed.
    """
    logger.info("Watchdog task started: Scanning for stuck jobs.")
    try:
        failed_job_ids = build_indexing_worker().fail_stuck_jobs(settings.WATCHDOG_THRESHOLD_SECONDS)
    except Exception as e:
        logger.error(f"Watchdog task encountered an unhandled exception: {e}", exc_info=True)
        return []

    if not failed_job_ids:
        logger.info("Watchdog found no stuck jobs.")
    return failed_job_ids
