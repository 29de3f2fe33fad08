# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery carries WAKE-UP messages for chat jobs. The job itself (payload,
# status, attempts, result) lives in the `chat_jobs` table; a message only
# says "job <id> may be ready". Retry backoff is a countdown on the next
# wake-up message, scheduled by JobQueue.fail_attempt().
#
# ARCHITECTURE:
# ┌──────────┐     ┌────────┐     ┌──────────────┐     ┌──────────────┐
# │ FastAPI  │────▶│ Redis  │────▶│ Celery Worker│────▶│ chat_jobs    │
# │ (enqueue)│     │(broker)│     │ (claim + run)│     │ (job store)  │
# └──────────┘     └────────┘     └──────────────┘     └──────────────┘
#      └──────────── db 0 ┘                                  ▲
#                                 ┌──────────────┐           │
#                                 │ Celery Beat  │───────────┘
#                                 │ sweep, clean │
#                                 └──────────────┘
#
# Beat runs two periodic tasks:
#   sweep_stalled_jobs  every stalled_check_interval_s  (stall recovery)
#   clean_old_jobs      hourly                          (retention)
# =============================================================================

from celery import Celery

from app.config import settings

celery_app = Celery(
    "app.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only. Pickle can execute arbitrary code during deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge after the task body returns, and re-queue if the worker
    # process dies. A duplicate delivery is harmless: the claim fails.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # One message at a time per worker process. Chat jobs are long-running
    # (outbound LLM + retrieval calls), so prefetching hurts fairness.
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # The processor bounds each attempt at job_timeout_s itself; the hard
    # limit only reaps a worker that is wedged outside the event loop.
    task_time_limit=settings.job_timeout_s + int(settings.job_lock_duration_s),

    # --- Results ---
    # Job results are stored on the job row; Celery results are not read.
    task_ignore_result=True,
    result_expires=3600,

    # --- Periodic Tasks ---
    beat_schedule={
        "sweep-stalled-jobs": {
            "task": "sweep_stalled_jobs",
            "schedule": settings.stalled_check_interval_s,
        },
        "clean-old-jobs": {
            "task": "clean_old_jobs",
            "schedule": 3600.0,
        },
    },

    include=["app.workers.tasks"],
)
