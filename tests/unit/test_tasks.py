"""
Unit Tests — Celery maintenance tasks
═════════════════════════════════════
Tests for doclib/workers/tasks.py and doclib/workers/celery_app.py

Tasks are called synchronously (task.__call__ runs the body in-process);
the pipeline they build is replaced by a namespace of AsyncMocks.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from doclib.workers import tasks
from doclib.workers.celery_app import MAINTENANCE_QUEUE, celery_app


@pytest.fixture
def fake_pipeline():
    pipeline = SimpleNamespace(
        processor=SimpleNamespace(process_pending_database_jobs=AsyncMock(
            return_value={"rescheduled": 2, "stale_failed": 0, "promoted": 1},
        )),
        search=SimpleNamespace(retry_failed=AsyncMock(return_value=3)),
        storage=SimpleNamespace(
            schedule_backup_retries=AsyncMock(return_value=4),
            schedule_incremental_syncs=AsyncMock(return_value=[uuid.UUID(int=1)]),
        ),
    )

    @asynccontextmanager
    async def _pipeline():
        yield pipeline

    with patch.object(tasks, "_pipeline", _pipeline):
        yield pipeline


@pytest.mark.unit
class TestMaintenanceTasks:

    def test_recover_pending_jobs(self, fake_pipeline):
        assert tasks.recover_pending_jobs() == {"rescheduled": 2, "stale_failed": 0, "promoted": 1}

    def test_retry_failed_index(self, fake_pipeline):
        assert tasks.retry_failed_index(limit=50) == {"requeued": 3}
        fake_pipeline.search.retry_failed.assert_awaited_once_with(50)

    def test_reschedule_deferred_backups(self, fake_pipeline):
        assert tasks.reschedule_deferred_backups() == {"scheduled": 4}

    def test_incremental_storage_sync(self, fake_pipeline):
        assert tasks.incremental_storage_sync() == {"sync_jobs": [str(uuid.UUID(int=1))]}


@pytest.mark.unit
class TestCeleryConfig:

    def test_beat_covers_every_sweep(self):
        scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert scheduled == {
            "doclib.workers.tasks.recover_pending_jobs",
            "doclib.workers.tasks.retry_failed_index",
            "doclib.workers.tasks.reschedule_deferred_backups",
            "doclib.workers.tasks.incremental_storage_sync",
        }

    def test_tasks_routed_to_maintenance_queue(self):
        assert celery_app.conf.task_default_queue == MAINTENANCE_QUEUE
        assert celery_app.conf.task_acks_late is True
