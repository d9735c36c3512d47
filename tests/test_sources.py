import aiohttp
import pytest

from common.redis_utils import ResponseCache
from reconciliation.errors import ConfigurationError, SourceLookupFailed
from reconciliation.sources import GoogleBooksSource, OpenLibrarySource
from reconciliation.sources.open_library import parse_search_doc

from factories import FakeRedis


class _FakeResp:
    def __init__(self, status=200, payload=None):
        self.status = status
        self._payload = payload

    async def json(self, content_type=None):
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _FakeSession:
    """Replays queued responses; an exception instance in the queue is raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, params=None, **kwargs):
        self.requests.append((method, url, params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        pass


def _google(session, **kwargs):
    return GoogleBooksSource(api_key="test-key", session=session, retry_delay=0, **kwargs)


def _open_library(session, **kwargs):
    return OpenLibrarySource(session=session, retry_delay=0, **kwargs)


VOLUME = {
    "id": "zyTCAlFPjgYC",
    "volumeInfo": {
        "title": "The Google Story",
        "subtitle": "Inside the Hottest Business",
        "authors": ["David A. Vise", "Mark Malseed"],
        "pageCount": 207,
        "description": "<p>Here is the story behind one of the most remarkable companies.</p>",
        "industryIdentifiers": [
            {"type": "ISBN_10", "identifier": "055380457X"},
            {"type": "ISBN_13", "identifier": "9780553804577"},
        ],
        "imageLinks": {"thumbnail": "http://books.google.com/books/content?id=zyTCAlFPjgYC&zoom=1&edge=curl"},
    },
}


def test_google_source_requires_api_key():
    with pytest.raises(ConfigurationError):
        GoogleBooksSource(api_key="")


@pytest.mark.asyncio
async def test_google_search_parses_volumes():
    session = _FakeSession(_FakeResp(payload={"items": [VOLUME, {"id": "x", "volumeInfo": {}}]}))
    source = _google(session)

    records = await source.search_by_text("google story")

    assert len(records) == 1
    record = records[0]
    assert record.title == "The Google Story: Inside the Hottest Business"
    assert record.authors == ["David A. Vise", "Mark Malseed"]
    assert record.isbn13 == "9780553804577" and record.isbn10 == "055380457X"
    assert record.google_books_id == "zyTCAlFPjgYC"
    assert record.total_pages == 207
    assert record.description == "Here is the story behind one of the most remarkable companies."
    assert record.cover_url.startswith("https://") and "zoom=0" in record.cover_url

    method, url, params = session.requests[0]
    assert url.endswith("/volumes")
    assert params["q"] == "google story" and params["key"] == "test-key"


@pytest.mark.asyncio
async def test_blank_query_makes_no_request():
    session = _FakeSession()
    assert await _google(session).search_by_text("   ") == []
    assert session.requests == []


@pytest.mark.asyncio
async def test_not_found_is_none():
    source = _google(_FakeSession(_FakeResp(status=404)))
    assert await source.get_by_id("missing") is None


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    session = _FakeSession(
        _FakeResp(status=503),
        aiohttp.ClientConnectionError("reset by peer"),
        _FakeResp(payload=VOLUME),
    )
    source = _google(session, max_retries=3)

    record = await source.get_by_id("zyTCAlFPjgYC")

    assert record.title.startswith("The Google Story")
    assert len(session.requests) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_source_lookup_failed():
    session = _FakeSession(_FakeResp(status=503), _FakeResp(status=503))
    source = _google(session, max_retries=2)

    with pytest.raises(SourceLookupFailed) as exc_info:
        await source.get_by_id("abc")

    assert exc_info.value.status == 503
    assert exc_info.value.source == "google_books"


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    session = _FakeSession(_FakeResp(status=400), _FakeResp(payload=VOLUME))
    source = _google(session)

    with pytest.raises(SourceLookupFailed):
        await source.get_by_id("abc")
    assert len(session.requests) == 1


@pytest.mark.asyncio
async def test_volume_lookups_are_cached_including_misses():
    session = _FakeSession(_FakeResp(payload=VOLUME), _FakeResp(status=404))
    source = _google(session, cache=ResponseCache("google_books", client=FakeRedis()))

    first = await source.get_by_id("zyTCAlFPjgYC")
    second = await source.get_by_id("zyTCAlFPjgYC")
    assert first == second
    assert await source.get_by_id("missing") is None
    assert await source.get_by_id("missing") is None
    assert len(session.requests) == 2


@pytest.mark.asyncio
async def test_search_by_isbn_cleans_the_isbn():
    session = _FakeSession(_FakeResp(payload={"items": [VOLUME]}))
    record = await _google(session).search_by_isbn("978-0-553-80457-7")
    assert record.google_books_id == "zyTCAlFPjgYC"
    assert session.requests[0][2]["q"] == "isbn:9780553804577"


# --- Open Library -----------------------------------------------------------

@pytest.mark.asyncio
async def test_edition_by_isbn_is_parsed_and_cached():
    edition = {
        "key": "/books/OL7353617M",
        "number_of_pages": 320,
        "covers": [-1, 8739161],
        "works": [{"key": "/works/OL45883W"}],
    }
    session = _FakeSession(_FakeResp(payload=edition))
    source = _open_library(session, cache=ResponseCache("open_library", client=FakeRedis()))

    first = await source.get_edition_by_isbn("978-0-306-40615-7")
    second = await source.get_edition_by_isbn("9780306406157")

    assert first == second
    assert first.pages == 320
    assert first.cover_id == 8739161
    assert first.work_key == "/works/OL45883W"
    assert first.edition_key == "/books/OL7353617M"
    assert len(session.requests) == 1
    assert session.requests[0][1].endswith("/isbn/9780306406157.json")


@pytest.mark.asyncio
async def test_invalid_isbn_makes_no_request():
    session = _FakeSession()
    assert await _open_library(session).get_edition_by_isbn("not an isbn") is None
    assert session.requests == []


@pytest.mark.asyncio
async def test_pages_from_books_api():
    session = _FakeSession(_FakeResp(payload={"ISBN:9780306406157": {"number_of_pages": 288}}))
    assert await _open_library(session).get_pages_from_books_api("9780306406157") == 288
    assert session.requests[0][2]["bibkeys"] == "ISBN:9780306406157"


@pytest.mark.asyncio
async def test_cover_by_id_needs_no_request_and_cover_by_isbn_is_validated():
    session = _FakeSession(_FakeResp(status=200), _FakeResp(status=404))
    source = _open_library(session)

    by_id = await source.get_cover_url(cover_id=5)
    assert by_id.url.endswith("/b/id/5-L.jpg?default=false")
    assert session.requests == []

    by_isbn = await source.get_cover_url(isbn="9780306406157")
    assert by_isbn.url.endswith("/b/isbn/9780306406157-L.jpg?default=false")
    assert session.requests[0][0] == "HEAD"

    missing = await source.get_cover_url(isbn="9780441172719")
    assert missing.url is None


@pytest.mark.asyncio
async def test_work_and_edition_descriptions():
    session = _FakeSession(
        _FakeResp(payload={"description": {"type": "/type/text", "value": "A [tale](https://x.org) of two cities."}}),
        _FakeResp(payload={"description": "Edition notes."}),
    )
    source = _open_library(session)

    assert await source.get_work_description("OL1W") == "A tale of two cities."
    assert await source.get_edition_description("OL2M") == "Edition notes."
    assert session.requests[0][1].endswith("/works/OL1W.json")
    assert session.requests[1][1].endswith("/books/OL2M.json")


def test_parse_search_doc():
    record = parse_search_doc(
        {
            "title": "Dune",
            "author_name": ["Frank Herbert"],
            "isbn": ["0441172717", "9780441172719", "bogus"],
            "cover_i": 11481354,
            "number_of_pages_median": 604,
            "key": "/works/OL893415W",
        }
    )
    assert record.isbn13 == "9780441172719" and record.isbn10 == "0441172717"
    assert record.openlibrary_cover_id == 11481354
    assert record.cover_url.endswith("/b/id/11481354-L.jpg?default=false")
    assert record.total_pages == 604
    assert parse_search_doc({"title": ""}) is None
