"""
Upstream collaborators: Google Books (metadata) and Open Library (covers).

Cover and per-volume category lookups go through an UpstreamScheduler so the
whole process never has more than UPSTREAM_MAX_CONCURRENCY of them in flight.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import requests

from shelfmate.core.config import settings
from shelfmate.services.candidates import CandidateBook, make_candidate

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

FORBIDDEN_TITLE_WORDS = ("annotated", "illustrated")


class UpstreamFetchError(Exception):
    """Raised when the metadata source is unreachable or answers with a non-success status."""
    pass


# ----------------------------
# Bounded scheduling
# ----------------------------
class UpstreamScheduler:
    """
    Bounded pool for upstream lookups, shared across requests.

    Work is queued FIFO; at most max_concurrency calls run at once. Tasks must not
    submit further work to the same scheduler and wait on it.
    """

    def __init__(self, max_concurrency: int = 5):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrency,
            thread_name_prefix="upstream",
        )

    def map(self, fn: Callable[[T], R], items: Iterable[T]) -> List[R]:
        """Run fn over items on the pool; results keep input order."""
        futures = [self._executor.submit(fn, item) for item in items]
        return [f.result() for f in futures]

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class InlineScheduler:
    """Runs every task in the calling thread, in order. Used by tests and scripts."""

    max_concurrency = 1

    def map(self, fn: Callable[[T], R], items: Iterable[T]) -> List[R]:
        return [fn(item) for item in items]

    def shutdown(self) -> None:
        pass


_default_scheduler: Optional[UpstreamScheduler] = None
_default_scheduler_lock = threading.Lock()


def get_upstream_scheduler() -> UpstreamScheduler:
    """Process-wide scheduler, created on first use."""
    global _default_scheduler
    with _default_scheduler_lock:
        if _default_scheduler is None:
            _default_scheduler = UpstreamScheduler(settings.UPSTREAM_MAX_CONCURRENCY)
            logger.info("Upstream scheduler started (max_concurrency=%d)", settings.UPSTREAM_MAX_CONCURRENCY)
        return _default_scheduler


def shutdown_upstream_scheduler() -> None:
    global _default_scheduler
    with _default_scheduler_lock:
        if _default_scheduler is not None:
            _default_scheduler.shutdown()
            _default_scheduler = None


# ----------------------------
# Google Books
# ----------------------------
@dataclass(frozen=True)
class VolumeMetadata:
    """The parts of a Google Books volume the pipeline uses."""
    volume_id: Optional[str]
    title: str
    authors: Tuple[str, ...]
    published_year: Optional[int]
    isbn_13: Optional[str]
    description: str
    rating: float
    categories: Tuple[str, ...]

    @property
    def first_author(self) -> str:
        return self.authors[0] if self.authors else ""


def _parse_published_year(published_date: Optional[str]) -> Optional[int]:
    if not published_date:
        return None
    try:
        year = int(str(published_date)[:4])
    except ValueError:
        return None
    return year if year > 0 else None


def _extract_isbn_13(volume_info: dict) -> Optional[str]:
    for ident in volume_info.get("industryIdentifiers") or []:
        if ident.get("type") == "ISBN_13":
            return ident.get("identifier")
    return None


def parse_volume(item: Dict[str, Any]) -> Optional[VolumeMetadata]:
    """Extract VolumeMetadata from a raw volumes API item; None when it has no volumeInfo."""
    info = item.get("volumeInfo")
    if not info or not isinstance(info, dict):
        return None
    return VolumeMetadata(
        volume_id=item.get("id"),
        title=info.get("title") or "",
        authors=tuple(info.get("authors") or ()),
        published_year=_parse_published_year(info.get("publishedDate")),
        isbn_13=_extract_isbn_13(info),
        description=info.get("description") or "",
        rating=float(info.get("averageRating") or 0),
        categories=tuple(info.get("categories") or ()),
    )


def truncate_description(text: Optional[str], word_limit: int = 150) -> str:
    """Cap text at word_limit words, appending ' ...' when something was cut."""
    if not text:
        return ""
    words = text.split()
    if len(words) <= word_limit:
        return text
    return " ".join(words[:word_limit]) + " ..."


class GoogleBooksClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GOOGLE_BOOKS_API_KEY
        self.base_url = (base_url or settings.GOOGLE_BOOKS_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.UPSTREAM_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def _params(self, **params) -> Dict[str, Any]:
        if self.api_key:
            params["key"] = self.api_key
        return params

    def close(self) -> None:
        self.session.close()

    def search_volumes(self, query: str, max_results: int = 20) -> List[Dict[str, Any]]:
        """Raw volume items for a query. Raises UpstreamFetchError on any failure."""
        try:
            resp = self.session.get(
                self.base_url,
                params=self._params(q=query, maxResults=max_results),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise UpstreamFetchError(f"Google Books search failed for {query!r}: {e}") from e
        if not isinstance(data, dict):
            raise UpstreamFetchError(f"Google Books search for {query!r} returned {type(data).__name__}, expected an object")
        items = data.get("items") or []
        if not isinstance(items, list):
            raise UpstreamFetchError(f"Google Books search for {query!r} returned malformed items")
        return [item for item in items if isinstance(item, dict)]

    def fetch_volume_categories(self, volume_id: Optional[str]) -> List[str]:
        """Categories from the volume-by-id endpoint (richer than search results); [] on failure."""
        if not volume_id:
            return []
        try:
            resp = self.session.get(
                f"{self.base_url}/{volume_id}",
                params=self._params(),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.debug("Volume lookup failed for %s: %s", volume_id, e)
            return []
        info = data.get("volumeInfo") if isinstance(data, dict) else None
        categories = info.get("categories") if isinstance(info, dict) else None
        return [c for c in categories if isinstance(c, str)] if isinstance(categories, list) else []


# ----------------------------
# Open Library covers
# ----------------------------
class OpenLibraryCoverClient:
    def __init__(
        self,
        search_url: Optional[str] = None,
        cover_url_template: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.search_url = search_url or settings.OPEN_LIBRARY_SEARCH_URL
        self.cover_url_template = cover_url_template or settings.OPEN_LIBRARY_COVER_URL
        self.timeout = timeout or settings.UPSTREAM_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def close(self) -> None:
        self.session.close()

    def lookup_cover(self, title: str, author: str) -> Optional[str]:
        """Large cover URL for the first search hit that has one, else None. Never raises on HTTP errors."""
        try:
            resp = self.session.get(
                self.search_url,
                params={"title": title, "author": author, "limit": 1},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.HTTPError as e:
            status = getattr(e.response, "status_code", None)
            if status == 429:
                logger.warning("Open Library rate limit hit for '%s' by '%s'", title, author)
            else:
                logger.debug("Open Library cover lookup failed for '%s' (status=%s)", title, status)
            return None
        except (requests.RequestException, ValueError) as e:
            logger.debug("Open Library cover lookup failed for '%s': %s", title, e)
            return None

        docs = data.get("docs") if isinstance(data, dict) else None
        if not isinstance(docs, list):
            logger.debug("Open Library returned an unexpected payload for '%s'", title)
            return None
        for doc in docs:
            cover_id = doc.get("cover_i") if isinstance(doc, dict) else None
            if cover_id:
                return self.cover_url_template.format(cover_id=cover_id)
        return None


# ----------------------------
# Metadata source
# ----------------------------
def is_forbidden_edition(title: str) -> bool:
    lowered = (title or "").lower()
    return any(word in lowered for word in FORBIDDEN_TITLE_WORDS)


class BookMetadataSource:
    """
    fetch(query, max_results) -> usable candidates.

    A volume is usable only with a cover and a description; annotated and
    illustrated editions are skipped.
    """

    def __init__(
        self,
        google: Optional[GoogleBooksClient] = None,
        covers: Optional[OpenLibraryCoverClient] = None,
        scheduler=None,
        description_word_limit: Optional[int] = None,
    ):
        self.google = google or GoogleBooksClient()
        self.covers = covers or OpenLibraryCoverClient()
        self.scheduler = scheduler or get_upstream_scheduler()
        self.description_word_limit = description_word_limit or settings.DESCRIPTION_WORD_LIMIT

    def close(self) -> None:
        """Close both HTTP sessions. The scheduler is shared and left running."""
        self.google.close()
        self.covers.close()

    def fetch(
        self,
        query: str,
        max_results: int = 20,
        detailed_categories: bool = False,
    ) -> List[CandidateBook]:
        items = self.google.search_volumes(query, max_results)
        volumes = [v for v in (parse_volume(item) for item in items) if v is not None]
        if not volumes:
            return []

        covers = self.scheduler.map(
            lambda v: self.covers.lookup_cover(v.title, v.first_author),
            volumes,
        )

        usable: List[Tuple[VolumeMetadata, str]] = []
        dropped_no_cover = 0
        for volume, cover_url in zip(volumes, covers):
            if not cover_url or not volume.description:
                dropped_no_cover += 1
                continue
            if is_forbidden_edition(volume.title):
                continue
            usable.append((volume, cover_url))

        if detailed_categories and usable:
            volume_categories = self.scheduler.map(
                lambda pair: self.google.fetch_volume_categories(pair[0].volume_id),
                usable,
            )
        else:
            volume_categories = [[] for _ in usable]

        logger.debug(
            "Metadata fetch query=%r volumes=%d usable=%d dropped_missing_cover_or_description=%d",
            query, len(volumes), len(usable), dropped_no_cover,
        )

        return [
            make_candidate(
                title=volume.title,
                authors=volume.authors,
                published_year=volume.published_year,
                isbn=volume.isbn_13,
                cover_url=cover_url,
                external_id=volume.volume_id,
                description=truncate_description(volume.description, self.description_word_limit),
                rating=volume.rating,
                # Per-volume categories when available, search-result categories otherwise
                categories=categories or volume.categories,
            )
            for (volume, cover_url), categories in zip(usable, volume_categories)
        ]


_default_source: Optional[BookMetadataSource] = None
_default_source_lock = threading.Lock()


def get_default_metadata_source() -> BookMetadataSource:
    """Process-wide metadata source (one pair of HTTP sessions), created on first use."""
    global _default_source
    with _default_source_lock:
        if _default_source is None:
            _default_source = BookMetadataSource(scheduler=get_upstream_scheduler())
        return _default_source


def close_default_metadata_source() -> None:
    global _default_source
    with _default_source_lock:
        if _default_source is not None:
            _default_source.close()
            _default_source = None
