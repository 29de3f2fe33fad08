# =============================================================================
# Celery Task Definitions — Chat Job Execution + Queue Maintenance
# =============================================================================
#
# process_chat_job    one attempt of one job (claim → agent → complete/fail)
# sweep_stalled_jobs  recover jobs whose worker lock expired
# clean_old_jobs      retention sweep over completed / failed jobs
#
# IMPORTANT: Celery workers are SYNCHRONOUS.
# The agent graph is async, so process_chat_job drives it with
# asyncio.run(). Each task invocation gets a fresh event loop.
#
# RETRY STRATEGY:
# Celery's own retry machinery is NOT used. JobQueue.fail_attempt() owns
# attempt counting and backoff and schedules the next wake-up through
# dispatch_job() with a countdown.
# =============================================================================

import asyncio
import logging

from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def dispatch_job(job_id: str, countdown: float = 0.0) -> None:
    """Schedule a worker wake-up for `job_id` after `countdown` seconds."""
    process_chat_job.apply_async(args=[job_id], countdown=max(0.0, countdown))


@celery_app.task(name="process_chat_job")
def process_chat_job(job_id: str) -> bool:
    """
    Run one attempt of a chat job.

    Returns True if this attempt completed the job. A False return is
    normal for duplicate or early deliveries (the claim fails) and for
    failed attempts (already recorded on the job).
    """
    from app.agents.orchestrator import get_chat_agent
    from app.services.queue import get_job_queue
    from app.workers.processor import ChatJobProcessor

    logger.info("Received wake-up for job %s", job_id)
    processor = ChatJobProcessor(get_job_queue(), get_chat_agent())
    return asyncio.run(processor.process(job_id))


@celery_app.task(name="sweep_stalled_jobs")
def sweep_stalled_jobs() -> dict:
    """Requeue or fail jobs whose worker lock expired."""
    from app.services.queue import get_job_queue

    report = get_job_queue().sweep()
    return {
        "requeued": report.requeued,
        "failed": report.failed,
        "redispatched": report.redispatched,
    }


@celery_app.task(name="clean_old_jobs")
def clean_old_jobs() -> int:
    """Delete finished jobs older than the retention window."""
    from app.services.queue import get_job_queue

    return get_job_queue().clean()
