"""Tests for the Google Books / Open Library clients and the metadata source."""
import threading
import time

import pytest
import requests

from shelfmate.services.upstream import (
    BookMetadataSource,
    GoogleBooksClient,
    InlineScheduler,
    OpenLibraryCoverClient,
    UpstreamFetchError,
    UpstreamScheduler,
    close_default_metadata_source,
    get_default_metadata_source,
    get_upstream_scheduler,
    is_forbidden_edition,
    parse_volume,
    shutdown_upstream_scheduler,
    truncate_description,
)
from shelfmate.routers.deps import get_metadata_source

from conftest import FakeResponse, FakeSession

GOOGLE_URL = "https://books.test/volumes"
OL_SEARCH_URL = "https://openlibrary.test/search.json"
OL_COVER_URL = "https://covers.test/{cover_id}-L.jpg"


def volume(volume_id, title, authors=("Frank Herbert",), description="Spice and sand.", categories=("Fiction",), **extra):
    info = {
        "title": title,
        "authors": list(authors),
        "description": description,
        "categories": list(categories),
        "publishedDate": "1965-08-01",
        "averageRating": 4.5,
        "industryIdentifiers": [
            {"type": "ISBN_10", "identifier": "0441013597"},
            {"type": "ISBN_13", "identifier": "9780441013593"},
        ],
    }
    info.update(extra)
    return {"id": volume_id, "volumeInfo": info}


def make_source(items, covers=None, volume_categories=None, cover_status=200):
    covers = covers if covers is not None else {}
    volume_categories = volume_categories or {}

    def handler(url, params):
        if url == GOOGLE_URL:
            return FakeResponse({"items": items})
        if url.startswith(GOOGLE_URL + "/"):
            volume_id = url.rsplit("/", 1)[1]
            return FakeResponse({"volumeInfo": {"categories": volume_categories.get(volume_id)}})
        if url == OL_SEARCH_URL:
            if cover_status != 200:
                return FakeResponse(status_code=cover_status)
            cover_id = covers.get(params["title"], 1234)
            return FakeResponse({"docs": [{"cover_i": cover_id}] if cover_id else []})
        raise AssertionError(f"unexpected url {url}")

    session = FakeSession(handler)
    source = BookMetadataSource(
        google=GoogleBooksClient(api_key="k", base_url=GOOGLE_URL, timeout=1, session=session),
        covers=OpenLibraryCoverClient(OL_SEARCH_URL, OL_COVER_URL, timeout=1, session=session),
        scheduler=InlineScheduler(),
        description_word_limit=150,
    )
    return source, session


def test_parse_volume_extracts_fields():
    v = parse_volume(volume("vol-1", "Dune"))
    assert v.volume_id == "vol-1"
    assert v.authors == ("Frank Herbert",)
    assert v.published_year == 1965
    assert v.isbn_13 == "9780441013593"
    assert v.rating == 4.5
    assert parse_volume({"id": "x"}) is None


def test_parse_volume_tolerates_bad_dates():
    v = parse_volume(volume("vol-1", "Dune", publishedDate="n.d."))
    assert v.published_year is None


def test_truncate_description():
    assert truncate_description(None) == ""
    assert truncate_description("one two three", word_limit=3) == "one two three"
    assert truncate_description("one two three four", word_limit=3) == "one two three ..."


@pytest.mark.parametrize(
    "title, forbidden",
    [("Dune", False), ("Dune (Annotated)", True), ("The Illustrated Hobbit", True)],
)
def test_forbidden_editions(title, forbidden):
    assert is_forbidden_edition(title) is forbidden


def test_fetch_builds_complete_candidates():
    source, session = make_source([volume("vol-1", "Dune")])

    [c] = source.fetch("subject:Fiction", 40)

    assert c.external_id == "vol-1"
    assert c.authors == "Frank Herbert"
    assert c.cover_url == "https://covers.test/1234-L.jpg"
    assert c.isbn == "9780441013593"
    assert c.categories == ("Fiction",)
    assert session.requests[0] == (GOOGLE_URL, {"q": "subject:Fiction", "maxResults": 40, "key": "k"})


def test_fetch_drops_books_without_cover_or_description_and_forbidden_editions():
    source, _ = make_source(
        [
            volume("vol-1", "Dune"),
            volume("vol-2", "No Cover"),
            volume("vol-3", "Blank", description=""),
            volume("vol-4", "Dune (Annotated)"),
        ],
        covers={"No Cover": None},
    )
    assert [c.external_id for c in source.fetch("q")] == ["vol-1"]


def test_fetch_uses_volume_categories_when_requested():
    source, _ = make_source(
        [volume("vol-1", "Dune"), volume("vol-2", "Emma", categories=("Fiction",))],
        volume_categories={"vol-1": ["Fiction / Science Fiction / General"]},
    )
    results = source.fetch("dune", detailed_categories=True)
    assert results[0].categories == ("Fiction / Science Fiction / General",)
    # Falls back to the search-result categories
    assert results[1].categories == ("Fiction",)


def test_cover_rate_limit_is_not_an_error(caplog):
    source, _ = make_source([volume("vol-1", "Dune")], cover_status=429)
    with caplog.at_level("WARNING"):
        assert source.fetch("q") == []
    assert "rate limit" in caplog.text


@pytest.mark.parametrize("payload", [["unexpected"], {"docs": "none"}, {"docs": ["junk", 42]}, "text"])
def test_cover_lookup_with_unexpected_payload_is_none(payload):
    client = OpenLibraryCoverClient(OL_SEARCH_URL, OL_COVER_URL, session=FakeSession(lambda url, params: FakeResponse(payload)))
    assert client.lookup_cover("Dune", "Frank Herbert") is None


def test_cover_lookup_skips_malformed_docs():
    payload = {"docs": ["junk", {"cover_i": None}, {"cover_i": 7}]}
    client = OpenLibraryCoverClient(OL_SEARCH_URL, OL_COVER_URL, session=FakeSession(lambda url, params: FakeResponse(payload)))
    assert client.lookup_cover("Dune", "Frank Herbert") == "https://covers.test/7-L.jpg"


@pytest.mark.parametrize("payload", [["unexpected"], {"volumeInfo": "x"}, {"volumeInfo": {"categories": "Fiction"}}])
def test_volume_categories_with_unexpected_payload_are_empty(payload):
    client = GoogleBooksClient(base_url=GOOGLE_URL, session=FakeSession(lambda url, params: FakeResponse(payload)))
    assert client.fetch_volume_categories("v1") == []


@pytest.mark.parametrize("payload", [["unexpected"], {"items": "none"}])
def test_search_with_unexpected_payload_raises_upstream_error(payload):
    client = GoogleBooksClient(base_url=GOOGLE_URL, session=FakeSession(lambda url, params: FakeResponse(payload)))
    with pytest.raises(UpstreamFetchError):
        client.search_volumes("dune")


def test_search_drops_non_object_items():
    payload = {"items": ["junk", volume("vol-1", "Dune"), {"id": "vol-2", "volumeInfo": "bad"}]}
    client = GoogleBooksClient(base_url=GOOGLE_URL, session=FakeSession(lambda url, params: FakeResponse(payload)))
    items = client.search_volumes("dune")
    assert [i["id"] for i in items] == ["vol-1", "vol-2"]
    assert parse_volume(items[1]) is None


def test_fetch_survives_malformed_cover_and_category_payloads():
    def handler(url, params):
        if url == GOOGLE_URL:
            return FakeResponse({"items": [volume("vol-1", "Dune"), volume("vol-2", "Emma")]})
        if url == OL_SEARCH_URL and params["title"] == "Dune":
            return FakeResponse({"docs": [{"cover_i": 1}]})
        return FakeResponse(["unexpected"])

    session = FakeSession(handler)
    source = BookMetadataSource(
        google=GoogleBooksClient(base_url=GOOGLE_URL, session=session),
        covers=OpenLibraryCoverClient(OL_SEARCH_URL, OL_COVER_URL, session=session),
        scheduler=InlineScheduler(),
    )
    [dune] = source.fetch("dune", detailed_categories=True)

    # Emma had no usable cover; Dune keeps its search-result categories
    assert dune.external_id == "vol-1"
    assert dune.categories == ("Fiction",)


def test_search_failure_raises_upstream_error():
    def handler(url, params):
        raise requests.ConnectionError("no route")

    client = GoogleBooksClient(base_url=GOOGLE_URL, session=FakeSession(handler))
    with pytest.raises(UpstreamFetchError):
        client.search_volumes("dune")


def test_search_error_status_raises_upstream_error():
    client = GoogleBooksClient(base_url=GOOGLE_URL, session=FakeSession(lambda url, params: FakeResponse(status_code=503)))
    with pytest.raises(UpstreamFetchError):
        client.search_volumes("dune")


def test_volume_category_lookup_failure_is_empty():
    client = GoogleBooksClient(base_url=GOOGLE_URL, session=FakeSession(lambda url, params: FakeResponse(status_code=500)))
    assert client.fetch_volume_categories("vol-1") == []
    assert client.fetch_volume_categories(None) == []


def test_inline_scheduler_keeps_order():
    assert InlineScheduler().map(lambda x: x * 2, [1, 2, 3]) == [2, 4, 6]


def test_upstream_scheduler_keeps_order_and_caps_concurrency():
    scheduler = UpstreamScheduler(max_concurrency=2)
    lock = threading.Lock()
    running = {"now": 0, "peak": 0}

    def task(x):
        with lock:
            running["now"] += 1
            running["peak"] = max(running["peak"], running["now"])
        time.sleep(0.01)
        with lock:
            running["now"] -= 1
        return x * x

    try:
        assert scheduler.map(task, range(8)) == [x * x for x in range(8)]
    finally:
        scheduler.shutdown()
    assert running["peak"] <= 2


def test_upstream_scheduler_rejects_zero_workers():
    with pytest.raises(ValueError):
        UpstreamScheduler(max_concurrency=0)


def test_metadata_source_close_closes_both_sessions():
    google_session = FakeSession(lambda url, params: FakeResponse({}))
    covers_session = FakeSession(lambda url, params: FakeResponse({}))
    source = BookMetadataSource(
        google=GoogleBooksClient(base_url=GOOGLE_URL, session=google_session),
        covers=OpenLibraryCoverClient(OL_SEARCH_URL, OL_COVER_URL, session=covers_session),
        scheduler=InlineScheduler(),
    )
    source.close()
    assert google_session.closed and covers_session.closed


def test_default_metadata_source_is_shared_per_process():
    try:
        first = get_metadata_source()
        assert get_metadata_source() is first
        assert first.scheduler is get_upstream_scheduler()

        close_default_metadata_source()
        assert get_default_metadata_source() is not first
    finally:
        close_default_metadata_source()
        shutdown_upstream_scheduler()
