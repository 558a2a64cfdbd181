"""
Celery Application Factory

Celery carries only the periodic maintenance work of the pipeline; job
execution itself happens in the asyncio BackgroundProcessor on the Redis
priority queue.

Queue topology:
  doclib.maintenance  — beat-driven sweeps (recovery, index retry, deferred
                        backups, incremental storage sync)

Beat schedule:
  recover-pending-jobs          every 60 s
  retry-failed-index            every 5 min
  reschedule-deferred-backups   every 5 min
  incremental-storage-sync      hourly
"""

from __future__ import annotations

import logging
import os

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Broker / backend URLs from environment
# ---------------------------------------------------------------------------

BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/2")

MAINTENANCE_QUEUE = "doclib.maintenance"

TASK_QUEUES = (
    Queue(
        MAINTENANCE_QUEUE,
        Exchange("doclib", type="direct", durable=True),
        routing_key=MAINTENANCE_QUEUE,
        durable=True,
    ),
)

TASK_ROUTES = {"doclib.workers.tasks.*": {"queue": MAINTENANCE_QUEUE}}


def create_celery_app() -> Celery:
    app = Celery("doclib")

    app.conf.update(
        broker_url=BROKER_URL,
        result_backend=RESULT_BACKEND,

        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=MAINTENANCE_QUEUE,

        # Sweeps are idempotent; a lost run is repeated by the next tick
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        task_soft_time_limit=600,
        task_time_limit=660,
        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "recover-pending-jobs": {
                "task":     "doclib.workers.tasks.recover_pending_jobs",
                "schedule": 60,
            },
            "retry-failed-index": {
                "task":     "doclib.workers.tasks.retry_failed_index",
                "schedule": 300,
            },
            "reschedule-deferred-backups": {
                "task":     "doclib.workers.tasks.reschedule_deferred_backups",
                "schedule": 300,
            },
            "incremental-storage-sync": {
                "task":     "doclib.workers.tasks.incremental_storage_sync",
                "schedule": 3600,
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["doclib.workers"])
    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s", task_id, task.name)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s result=%s", task_id, task.name, state, retval)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error("Task failed | task_id=%s error=%s", task_id, exception, exc_info=True)
