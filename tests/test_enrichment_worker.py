import asyncio
from types import SimpleNamespace

import pytest

from book_enrichment_worker.main import EnrichmentWorker
from common.models import Book
from reconciliation.catalog import SqlCatalogStore
from reconciliation.hydration import HydrationPipeline


@pytest.fixture
def worker(session_factory, google, open_library, context):
    store = SqlCatalogStore(session_factory)
    pipeline = HydrationPipeline(store, google=google, open_library=open_library, context=context, publish_events=False)
    return EnrichmentWorker(store, pipeline, batch_size=5)


def _add_books(session_factory, *titles):
    with session_factory() as db:
        books = [Book(title=title, author="Jane Doe") for title in titles]
        db.add_all(books)
        db.commit()
        return [b.id for b in books]


@pytest.mark.asyncio
async def test_handle_task_hydrates_book(worker, session_factory):
    (book_id,) = _add_books(session_factory, "Persuasion")

    assert await worker.handle_task({"book_id": book_id, "event_type": "book_enrichment_task"})

    with session_factory() as db:
        assert "Persuasion" in db.get(Book, book_id).description
    assert worker.processed == 1


@pytest.mark.asyncio
async def test_malformed_and_unknown_tasks_are_skipped(worker):
    assert await worker.handle_task({"isbn": "9780306406157"}) is False
    assert await worker.handle_task({"book_id": "gone"}) is False
    assert worker.failed == 2


@pytest.mark.asyncio
async def test_run_batch_does_not_reclaim_attempted_books(worker, session_factory):
    _add_books(session_factory, "Emma", "Mansfield Park")

    assert await worker.run_batch() == 2
    assert await worker.run_batch() == 0

    health = worker.get_health_status()
    assert health["processed"] == 2
    assert health["breaker_open"] is False


class FakeConsumer:
    def __init__(self, *payloads, fail_start=False):
        self.payloads = payloads
        self.fail_start = fail_start
        self.started = False
        self.stopped = False

    async def start(self):
        if self.fail_start:
            raise ConnectionError("broker unavailable")
        self.started = True

    async def stop(self):
        self.stopped = True

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        for payload in self.payloads:
            yield SimpleNamespace(value=payload)


@pytest.mark.asyncio
async def test_consume_hydrates_each_task_and_stops_consumer(worker, session_factory):
    (book_id,) = _add_books(session_factory, "Sense and Sensibility")
    consumer = FakeConsumer({"book_id": book_id}, {"not": "a task"})

    await worker.consume(consumer)

    assert consumer.started and consumer.stopped
    assert worker.processed == 1
    assert worker.failed == 1


@pytest.mark.asyncio
async def test_consumer_failure_is_recorded(worker):
    task = asyncio.create_task(worker.consume(FakeConsumer(fail_start=True)))
    task.add_done_callback(worker.on_consumer_done)

    await asyncio.gather(task, return_exceptions=True)
    await asyncio.sleep(0)

    assert worker.consumer_error == "ConnectionError: broker unavailable"
    assert worker.get_health_status()["consumer_error"] == worker.consumer_error
