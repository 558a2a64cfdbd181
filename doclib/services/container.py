"""
Pipeline wiring.

build_pipeline() constructs every component once, with explicit
dependencies, for the process that needs them (API server, Celery worker).
Tests build the same graph by hand from in-memory repositories.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from doclib.core.config import Settings, settings as default_settings
from doclib.processing.extractor import TextExtractor
from doclib.search.base import SearchBackend
from doclib.search.elasticsearch import ElasticsearchBackend
from doclib.search.synchronizer import SearchIndexSynchronizer
from doclib.services.extraction import ExtractionService
from doclib.services.ingestion import IngestionService
from doclib.storage.factory import get_storage_providers
from doclib.storage.hybrid import HybridStorageManager
from doclib.workers.processor import AIHandler, BackgroundProcessor
from doclib.workers.queue import JobQueue, RedisQueueStore

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    cfg:        Settings
    queue:      JobQueue
    storage:    HybridStorageManager
    extraction: ExtractionService
    search:     SearchIndexSynchronizer
    processor:  BackgroundProcessor
    ingestion:  IngestionService
    _queue_store:    RedisQueueStore
    _search_backend: SearchBackend

    async def close(self) -> None:
        await self.processor.stop()
        await self._search_backend.close()
        await self._queue_store.close()
        logger.info("Pipeline closed")


def build_pipeline(
    cfg: Settings | None = None,
    *,
    ai_handler: AIHandler | None = None,
) -> Pipeline:
    from doclib.repositories.sql import (
        SqlContentRepository,
        SqlExtractionJobRepository,
        SqlFileRepository,
        SqlIndexStatusRepository,
        SqlLocationRepository,
        SqlSyncJobRepository,
    )

    cfg = cfg or default_settings
    files = SqlFileRepository()

    queue_store = RedisQueueStore(cfg=cfg)
    queue = JobQueue(queue_store)

    storage = HybridStorageManager(
        providers=get_storage_providers(cfg),
        files=files,
        locations=SqlLocationRepository(),
        sync_jobs=SqlSyncJobRepository(),
        queue=queue,
        cfg=cfg,
    )
    extraction = ExtractionService(
        jobs=SqlExtractionJobRepository(),
        contents=SqlContentRepository(),
        files=files,
        storage=storage,
        extractor=TextExtractor(cfg),
        queue=queue,
        cfg=cfg,
    )
    search_backend = ElasticsearchBackend(cfg)
    search = SearchIndexSynchronizer(
        backend=search_backend,
        files=files,
        contents=SqlContentRepository(),
        statuses=SqlIndexStatusRepository(),
        queue=queue,
        cfg=cfg,
    )
    processor = BackgroundProcessor(
        queue=queue,
        extraction=extraction,
        storage=storage,
        search=search,
        cfg=cfg,
        ai_handler=ai_handler,
    )
    ingestion = IngestionService(storage, extraction, search, queue, cfg)

    return Pipeline(
        cfg=cfg,
        queue=queue,
        storage=storage,
        extraction=extraction,
        search=search,
        processor=processor,
        ingestion=ingestion,
        _queue_store=queue_store,
        _search_backend=search_backend,
    )
