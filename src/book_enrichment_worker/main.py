#!/usr/bin/env python3
"""
Book Enrichment Worker

Background hydration outside any user session:
- consumes ``book_enrichment_tasks`` events from Kafka and hydrates each book
- every ``batch_interval`` seconds claims a batch of incomplete books and
  hydrates them one by one

Hydration itself never raises for source failures, so a bad book cannot stall
the loop; a missing book is logged and skipped.
"""

import asyncio
import json
import os
import time
from typing import Any, Dict, Optional

from aiokafka import AIOKafkaConsumer
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from common.events import BOOK_ENRICHMENT_TASKS_TOPIC, BookEnrichmentTaskEvent
from common.kafka_utils import close_producers
from common.metrics import MESSAGES_CONSUMED_TOTAL
from common.models import Base
from common.redis_utils import ResponseCache
from common.settings import settings
from common.structured_logging import get_logger
from reconciliation.catalog import SqlCatalogStore
from reconciliation.context import ReconciliationContext
from reconciliation.errors import NotFound
from reconciliation.hydration import HydrationPipeline
from reconciliation.sources import GoogleBooksSource, OpenLibrarySource

logger = get_logger(__name__)

# Configuration
WORKER_CONFIG = {
    'batch_size': settings.enrichment_batch_size,
    'batch_interval': int(os.getenv('ENRICHMENT_BATCH_INTERVAL', '30')),
    'consumer_group': os.getenv('ENRICHMENT_CONSUMER_GROUP', 'book_enrichment_worker'),
}


class EnrichmentWorker:
    """Runs hydration for queued tasks and periodic batches."""

    def __init__(self, store: SqlCatalogStore, pipeline: HydrationPipeline, batch_size: int = None):
        self.store = store
        self.pipeline = pipeline
        self.batch_size = batch_size or WORKER_CONFIG['batch_size']
        self.last_batch_time = 0.0
        self.processed = 0
        self.failed = 0
        self._attempted: Dict[str, float] = {}
        self.consumer_error: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "EnrichmentWorker":
        engine = create_engine(settings.db_url, pool_pre_ping=True)
        Base.metadata.create_all(engine)
        store = SqlCatalogStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))
        pipeline = HydrationPipeline(
            store,
            google=GoogleBooksSource(cache=ResponseCache("google_books")),
            open_library=OpenLibrarySource(cache=ResponseCache("open_library")),
            context=ReconciliationContext.from_settings(),
        )
        return cls(store, pipeline)

    async def cleanup(self):
        """Clean up resources."""
        for source in (self.pipeline.google, self.pipeline.open_library):
            if source is not None:
                await source.close()

    async def handle_task(self, message: Dict[str, Any]) -> bool:
        """Hydrate the book named by one task event. Returns True on success."""
        try:
            task = BookEnrichmentTaskEvent.model_validate(message)
        except PydanticValidationError:
            logger.warning("Discarding malformed enrichment task", extra={"payload": message})
            self.failed += 1
            return False

        return await self._hydrate(task.book_id, force=task.force)

    async def _hydrate(self, book_id: str, force: bool = False) -> bool:
        try:
            result = await self.pipeline.hydrate(book_id, force=force)
        except NotFound:
            logger.warning("Enrichment task for unknown book", extra={"book_id": book_id})
            self.failed += 1
            return False
        self.processed += 1
        logger.info("Book enriched", extra={"book_id": book_id, "sources": result.sources})
        return True

    async def consume(self, consumer: Optional[AIOKafkaConsumer] = None) -> None:
        """Hydrate each task arriving on the enrichment topic until cancelled."""
        consumer = consumer or AIOKafkaConsumer(
            BOOK_ENRICHMENT_TASKS_TOPIC,
            bootstrap_servers=settings.kafka_bootstrap,
            group_id=WORKER_CONFIG['consumer_group'],
            value_deserializer=lambda m: json.loads(m.decode("utf-8")),
            auto_offset_reset="latest",
            enable_auto_commit=True,
        )
        await consumer.start()
        logger.info("Consuming enrichment tasks", extra={"topic": BOOK_ENRICHMENT_TASKS_TOPIC})
        try:
            async for message in consumer:
                try:
                    ok = await self.handle_task(message.value)
                except Exception:
                    MESSAGES_CONSUMED_TOTAL.labels(topic=BOOK_ENRICHMENT_TASKS_TOPIC, status="error").inc()
                    logger.error("Error processing enrichment task", exc_info=True)
                else:
                    status = "success" if ok else "skipped"
                    MESSAGES_CONSUMED_TOTAL.labels(topic=BOOK_ENRICHMENT_TASKS_TOPIC, status=status).inc()
        finally:
            await consumer.stop()

    def on_consumer_done(self, task: "asyncio.Task") -> None:
        """Record why the consumer stopped; batches keep running without it."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.consumer_error = f"{type(error).__name__}: {error}"
            logger.error(
                "Enrichment task consumer stopped",
                exc_info=(type(error), error, error.__traceback__),
                extra={"topic": BOOK_ENRICHMENT_TASKS_TOPIC},
            )

    async def run_batch(self) -> int:
        """Claim up to ``batch_size`` incomplete books and hydrate them."""
        now = time.time()
        ttl = self.pipeline.context.hydration_ttl
        self._attempted = {k: t for k, t in self._attempted.items() if now - t < ttl}

        books = await self.store.list_incomplete(self.batch_size, exclude_ids=self._attempted)
        done = 0
        for book in books:
            self._attempted[book.id] = now
            if await self._hydrate(book.id):
                done += 1
        self.last_batch_time = time.time()
        if books:
            logger.info("Batch enrichment finished", extra={"claimed": len(books), "enriched": done})
        return done

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "last_batch_time": self.last_batch_time,
            "breaker_open": self.pipeline.context.breaker.is_open,
            "consumer_error": self.consumer_error,
        }


async def main(worker: Optional[EnrichmentWorker] = None):
    """Main worker loop."""
    logger.info("Starting Book Enrichment Worker", extra={"config": WORKER_CONFIG})
    worker = worker or EnrichmentWorker.from_settings()
    kafka_task = asyncio.create_task(worker.consume())
    kafka_task.add_done_callback(worker.on_consumer_done)

    try:
        while True:
            try:
                if time.time() - worker.last_batch_time >= WORKER_CONFIG['batch_interval']:
                    await worker.run_batch()
                await asyncio.sleep(1)
            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)
                await asyncio.sleep(5)  # Longer delay on errors
    finally:
        kafka_task.cancel()
        await asyncio.gather(kafka_task, return_exceptions=True)
        await worker.cleanup()
        await close_producers()
        logger.info("Book Enrichment Worker shutdown complete", extra=worker.get_health_status())


if __name__ == "__main__":
    asyncio.run(main())
