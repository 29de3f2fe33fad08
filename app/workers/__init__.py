# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration + beat schedule
#   - tasks.py: task definitions (process job, stall sweep, retention clean)
#   - processor.py: what one worker does with one job, Celery-free
#
# WHY CELERY?
# An agent turn makes up to two slow network calls (tool + completion).
# Running them inside the request would tie the API to upstream latency, so
# requests enqueue a job and return a jobId; workers answer in the
# background and the client polls.
# =============================================================================
