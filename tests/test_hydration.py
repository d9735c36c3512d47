import pytest

from factories import LONG_DESCRIPTION, lookup_failure, make_complete_record, make_record
from reconciliation.errors import NotFound
from reconciliation.hydration import GENERATED_SOURCE, HydrationPipeline
from reconciliation.models import EditionInfo

ISBN13 = "9780306406157"


@pytest.fixture
def pipeline(store, google, open_library, context):
    return HydrationPipeline(store, google=google, open_library=open_library, context=context, publish_events=False)


def _edition(**overrides):
    values = {"pages": 300, "cover_id": 7, "work_key": "/works/OL1W", "edition_key": "/books/OL2M"}
    values.update(overrides)
    return EditionInfo(**values)


@pytest.mark.asyncio
async def test_hydrate_fills_every_field_in_priority_order(pipeline, store, google, open_library):
    book = store.add(make_record(isbn13=ISBN13, google_books_id="g1"))
    open_library.editions[ISBN13] = _edition()
    google.volumes["g1"] = make_record(
        total_pages=280, cover_url="https://books.google.com/cover.jpg", description=LONG_DESCRIPTION
    )

    result = await pipeline.hydrate(book.id)

    assert result.total_pages == 300
    assert result.cover_url == "https://covers.openlibrary.org/b/id/7-L.jpg?default=false"
    assert result.description == LONG_DESCRIPTION
    assert "pages:open_library_edition" in result.sources
    assert "description:google_books" in result.sources

    saved = store.records[book.id]
    assert saved.total_pages == 300
    assert saved.openlibrary_cover_id == 7
    assert saved.openlibrary_work_key == "/works/OL1W"
    assert saved.openlibrary_edition_key == "/books/OL2M"
    assert google.count("get_by_id") == 1
    assert len(store.upserts) == 1


@pytest.mark.asyncio
async def test_pages_fall_through_to_google_then_books_api(pipeline, store, google, open_library):
    via_google = store.add(make_complete_record(isbn13=ISBN13, google_books_id="g1", total_pages=None))
    google.volumes["g1"] = make_record(total_pages=280)
    result = await pipeline.hydrate(via_google.id)
    assert result.total_pages == 280
    assert "pages:google_books" in result.sources

    via_books_api = store.add(make_complete_record(isbn13="9780441172719", total_pages=None))
    open_library.books_api_pages["9780441172719"] = 250
    result = await pipeline.hydrate(via_books_api.id)
    assert result.total_pages == 250
    assert "pages:open_library_books_api" in result.sources


@pytest.mark.asyncio
async def test_cover_falls_back_from_isbn_to_google(pipeline, store, google, open_library):
    by_isbn = store.add(make_complete_record(isbn13=ISBN13, cover_url=None))
    open_library.isbn_covers[ISBN13] = "https://covers.openlibrary.org/b/isbn/9780306406157-L.jpg?default=false"
    result = await pipeline.hydrate(by_isbn.id)
    assert result.cover_url == open_library.isbn_covers[ISBN13]

    by_google = store.add(make_complete_record(isbn13="9780441172719", google_books_id="g2", cover_url=None))
    google.volumes["g2"] = make_record(cover_url="https://books.google.com/g2.jpg")
    result = await pipeline.hydrate(by_google.id)
    assert result.cover_url == "https://books.google.com/g2.jpg"


@pytest.mark.asyncio
async def test_description_chain_ends_with_generated_summary(pipeline, store, open_library):
    from_edition = store.add(
        make_complete_record(
            description=None, openlibrary_work_key="/works/OL5W", openlibrary_edition_key="/books/OL6M"
        )
    )
    open_library.edition_descriptions["/books/OL6M"] = "An edition blurb long enough to keep. " * 4
    result = await pipeline.hydrate(from_edition.id)
    assert result.description.startswith("An edition blurb")
    assert "description:open_library" in result.sources
    assert open_library.count("get_work_description") == 1

    generated = store.add(make_complete_record(title="Quiet Book", description=None, total_pages=210))
    result = await pipeline.hydrate(generated.id)
    assert GENERATED_SOURCE in result.sources
    assert "Quiet Book" in result.description and "210 pages" in result.description
    assert store.records[generated.id].description == result.description


@pytest.mark.asyncio
async def test_existing_values_are_never_overwritten(pipeline, store, google, open_library):
    book = store.add(
        make_complete_record(isbn13=ISBN13, google_books_id="g1", total_pages=100, description="Too short.")
    )
    open_library.editions[ISBN13] = _edition(pages=300)
    google.volumes["g1"] = make_record(total_pages=280, description=LONG_DESCRIPTION)

    result = await pipeline.hydrate(book.id)

    _, written = store.upserts[-1]
    assert "total_pages" not in written
    assert "cover_url" not in written
    assert written["description"] == LONG_DESCRIPTION
    assert result.total_pages == 100


@pytest.mark.asyncio
async def test_force_replaces_materially_different_values_but_not_with_generated_text(
    pipeline, store, open_library
):
    book = store.add(make_complete_record(isbn13=ISBN13, total_pages=100))
    open_library.editions[ISBN13] = _edition(pages=300)

    result = await pipeline.hydrate(book.id, force=True)

    _, written = store.upserts[-1]
    assert written["total_pages"] == 300
    assert "description" not in written
    assert GENERATED_SOURCE in result.sources
    assert store.records[book.id].description == LONG_DESCRIPTION


@pytest.mark.asyncio
async def test_force_ignores_whitespace_and_case_only_differences(pipeline, store, google):
    book = store.add(make_complete_record(google_books_id="g1"))
    google.volumes["g1"] = make_record(description="  " + LONG_DESCRIPTION.upper())

    await pipeline.hydrate(book.id, force=True)

    assert all("description" not in written for _, written in store.upserts)


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(pipeline, store, open_library):
    book = store.add(make_record(isbn13=ISBN13))
    open_library.editions[ISBN13] = _edition()

    result = await pipeline.hydrate(book.id, dry_run=True)

    assert result.total_pages == 300
    assert store.upserts == []
    assert store.records[book.id].total_pages is None


@pytest.mark.asyncio
async def test_second_run_is_idempotent_and_makes_no_source_calls(pipeline, store, google, open_library):
    book = store.add(make_record(isbn13=ISBN13, google_books_id="g1"))
    open_library.editions[ISBN13] = _edition()
    google.volumes["g1"] = make_record(description=LONG_DESCRIPTION)

    first = await pipeline.hydrate(book.id)
    calls = len(open_library.calls) + len(google.calls)
    second = await pipeline.hydrate(book.id)

    assert second.field_values() == first.field_values()
    assert len(open_library.calls) + len(google.calls) == calls
    assert len(store.upserts) == 1


@pytest.mark.asyncio
async def test_complete_record_short_circuits(pipeline, store, google, open_library):
    book = store.add(make_complete_record(isbn13=ISBN13, google_books_id="g1"))

    result = await pipeline.hydrate(book.id)

    assert result.total_pages == book.total_pages
    assert open_library.calls == [] and google.calls == []
    assert store.upserts == []


@pytest.mark.asyncio
async def test_source_failures_fall_through(pipeline, store, google, open_library):
    book = store.add(make_record(isbn13=ISBN13, google_books_id="g1"))
    open_library.failures["get_edition_by_isbn"] = lookup_failure(operation="edition_by_isbn")
    google.volumes["g1"] = make_record(total_pages=280)

    result = await pipeline.hydrate(book.id)

    assert result.total_pages == 280
    assert result.description


@pytest.mark.asyncio
async def test_unknown_book_raises_not_found(pipeline):
    with pytest.raises(NotFound) as exc_info:
        await pipeline.hydrate("does-not-exist")
    assert exc_info.value.http_status == 404


@pytest.mark.asyncio
async def test_description_lookups_are_cached_with_failure_ttl(pipeline, store, open_library, clock):
    book = store.add(make_complete_record(description=None, openlibrary_work_key="/works/OL9W"))

    await pipeline.hydrate(book, force=True)
    assert open_library.count("get_work_description") == 1

    clock.advance(30 * 60)
    await pipeline.hydrate(book, force=True)
    assert open_library.count("get_work_description") == 1

    clock.advance(31 * 60)
    open_library.work_descriptions["/works/OL9W"] = "A work description that is comfortably long. " * 4
    result = await pipeline.hydrate(book, force=True)
    assert open_library.count("get_work_description") == 2
    assert "description:open_library" in result.sources

    clock.advance(23 * 3600)
    await pipeline.hydrate(book, force=True)
    assert open_library.count("get_work_description") == 2


@pytest.mark.asyncio
async def test_hydration_cache_is_shared_by_work_key(pipeline, store, open_library):
    open_library.work_descriptions["/works/OL3W"] = "Shared description for every edition of the work. " * 3
    first = store.add(make_complete_record(description=None, openlibrary_work_key="/works/OL3W"))
    second = store.add(make_complete_record(description=None, openlibrary_work_key="works/ol3w"))

    await pipeline.hydrate(first.id)
    await pipeline.hydrate(second.id)

    assert open_library.count("get_work_description") == 1
    assert store.records[second.id].description == store.records[first.id].description


@pytest.mark.asyncio
async def test_other_edition_of_same_work_still_looks_up_its_own_pages(pipeline, store, open_library):
    open_library.work_descriptions["/works/OL3W"] = "Shared description for every edition of the work. " * 3
    first = store.add(make_complete_record(description=None, openlibrary_work_key="/works/OL3W"))
    second = store.add(
        make_record(isbn13="9780441172719", openlibrary_work_key="/works/OL3W", cover_url=None, total_pages=None)
    )
    open_library.editions["9780441172719"] = _edition(pages=412, cover_id=11, work_key="/works/OL3W")

    await pipeline.hydrate(first.id)
    result = await pipeline.hydrate(second.id)

    assert open_library.count("get_edition_by_isbn") == 1
    assert result.total_pages == 412
    assert result.cover_url == "https://covers.openlibrary.org/b/id/11-L.jpg?default=false"
    saved = store.records[second.id]
    assert saved.total_pages == 412
    assert saved.description == store.records[first.id].description


@pytest.mark.asyncio
async def test_dry_run_does_not_block_the_next_real_run(pipeline, store, open_library):
    book = store.add(make_record(isbn13=ISBN13))
    open_library.editions[ISBN13] = _edition(pages=412)

    preview = await pipeline.hydrate(book.id, dry_run=True)
    assert preview.total_pages == 412
    assert store.upserts == []

    await pipeline.hydrate(book.id)

    assert store.records[book.id].total_pages == 412
    assert len(store.upserts) == 1


@pytest.mark.asyncio
async def test_placeholder_cover_counts_as_missing(pipeline, store, open_library):
    book = store.add(make_complete_record(cover_url="/placeholder-cover.svg", openlibrary_cover_id=9))

    result = await pipeline.hydrate(book.id)

    assert result.cover_url == "https://covers.openlibrary.org/b/id/9-L.jpg?default=false"
    assert store.records[book.id].cover_url == result.cover_url


@pytest.mark.asyncio
async def test_hydrated_event_is_published(store, google, open_library, context, monkeypatch):
    published = []

    async def fake_publish(topic, event):
        published.append((topic, event))
        return True

    monkeypatch.setattr("reconciliation.hydration.publish_event", fake_publish)
    pipeline = HydrationPipeline(store, google=google, open_library=open_library, context=context, publish_events=True)
    book = store.add(make_complete_record(isbn13=ISBN13, total_pages=None))
    open_library.editions[ISBN13] = _edition()

    await pipeline.hydrate(book.id)

    assert len(published) == 1
    topic, event = published[0]
    assert topic == "book_events"
    assert event.book_id == book.id
    assert "total_pages" in event.updated_fields
