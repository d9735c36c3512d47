import pytest

from common.settings import DEFAULT_POOR_DESCRIPTION_PATTERNS
from reconciliation.covers import (
    PLACEHOLDER_COVER,
    is_bad_cover_url,
    openlibrary_cover_by_id,
    resolve_cover_url,
    upgrade_google_thumbnail,
)
from reconciliation.descriptions import (
    PoorDescriptionPredicate,
    clean_description,
    clean_openlibrary_description,
    generate_fallback_summary,
)


# --- covers ---------------------------------------------------------------

def test_upgrade_google_thumbnail():
    url = "http://books.google.com/books/content?id=abc&printsec=frontcover&img=1&zoom=1&edge=curl&source=gbs_api"
    upgraded = upgrade_google_thumbnail(url)
    assert upgraded.startswith("https://")
    assert "zoom=0" in upgraded
    assert "edge=curl" not in upgraded
    assert upgrade_google_thumbnail(None) is None


@pytest.mark.parametrize(
    "url,bad",
    [
        (None, True),
        ("   ", True),
        (PLACEHOLDER_COVER, True),
        ("https://example.com/image-not-available.png", False),
        ("https://example.com/Image Not Available.png", True),
        ("https://cdn.example.com/no-cover.jpg", True),
        ("data:text/html;base64,AAAA", True),
        ("data:image/png;base64,AAAA", False),
        ("https://covers.openlibrary.org/b/id/1-L.jpg?default=false", False),
    ],
)
def test_is_bad_cover_url(url, bad):
    assert is_bad_cover_url(url) is bad


def test_openlibrary_cover_by_id_disables_default_image():
    assert openlibrary_cover_by_id(42).endswith("/b/id/42-L.jpg?default=false")
    assert openlibrary_cover_by_id(None) is None


def test_resolve_cover_url_prefers_google_then_isbn_then_placeholder():
    cache = {}
    assert resolve_cover_url({"thumbnail": "http://g/t?zoom=1"}, "9780306406157", cache=cache) == "https://g/t?zoom=0"
    # memoised by ISBN
    assert resolve_cover_url({}, "9780306406157", cache=cache) == "https://g/t?zoom=0"

    assert resolve_cover_url({}, isbn10="0306406152").endswith("/b/isbn/0306406152-L.jpg?default=false")
    assert resolve_cover_url({}, None, None) == PLACEHOLDER_COVER


# --- descriptions ---------------------------------------------------------

def test_clean_description_strips_html_and_truncates():
    assert clean_description("<p>Hello   <b>world</b></p>") == "Hello world"
    assert clean_description("") is None
    long = "x" * 3000
    cleaned = clean_description(long)
    assert len(cleaned) == 2000 and cleaned.endswith("...")


def test_clean_openlibrary_description():
    raw = {
        "type": "/type/text",
        "value": "A [classic](https://openlibrary.org/x) tale -- told again.\n\n"
        "----------\nAlso contained in:\n- [Collected Works](/works/OL2W)",
    }
    assert clean_openlibrary_description(raw) == "A classic tale told again."
    assert clean_openlibrary_description(None) is None
    assert clean_openlibrary_description({"value": ""}) is None

    long = clean_openlibrary_description("word " * 200)
    assert len(long) <= 320 and long.endswith("…")


def test_generated_summary_is_never_poor():
    predicate = PoorDescriptionPredicate(patterns=DEFAULT_POOR_DESCRIPTION_PATTERNS)
    for title, author, pages in [("Dune", "Frank Herbert", 412), ("", "", None), ("X", None, 0)]:
        summary = generate_fallback_summary(title, author, pages)
        assert summary
        assert not predicate(summary)


def test_generated_summary_mentions_basics():
    summary = generate_fallback_summary("Dune", "Frank Herbert", 412)
    assert "Dune" in summary and "Frank Herbert" in summary and "412 pages" in summary


def test_poor_description_predicate():
    predicate = PoorDescriptionPredicate(min_length=40, patterns=DEFAULT_POOR_DESCRIPTION_PATTERNS)
    assert predicate(None)
    assert predicate("Too short.")
    assert predicate("Book by Jane Doe, approximately 350 pages.")
    assert predicate("Novel by Someone With A Long Name, approximately 1200 pages")
    assert not predicate("The book has approximately 1200 pages and a great many footnotes")
    assert not predicate("A long and lovingly written account of a voyage across the sea.")
