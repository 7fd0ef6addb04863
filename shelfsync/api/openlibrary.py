"""
Open Library API client for the Shelf Sync Service.

Reading-log shelves, lists, loans and work records are read and written
through the public JSON endpoints using the account session cookie.
"""

import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Iterable
from urllib.parse import unquote

from shelfsync.api.base import APIError, AuthError, BaseClient, ServerError
from shelfsync.sync.models import (
    Author,
    AuthorDisplayItem,
    Book,
    BookDisplayItem,
    BookList,
    DisplayItem,
    REMOVE_FROM_ALL_SHELVES,
    Shelf,
    WorkResolution,
    shelf_config,
)
from shelfsync.utils.logging import get_logger

logger = get_logger(__name__)

OPENLIBRARY_URL = "https://openlibrary.org"
USER_AGENT = "shelf-sync/0.1.0 (+https://openlibrary.org/developers/api)"

SEARCH_FIELDS = (
    "key,title,author_name,cover_i,cover_edition_key,edition_key,"
    "first_publish_year,publisher,number_of_pages_median,isbn,availability,ia"
)
WORK_BATCH_SIZE = 50
EDITION_BATCH_SIZE = 25

_USER_FROM_COOKIE = re.compile(r"/people/([^%,/]+)")


def _strip_prefix(key: Optional[str], prefix: str) -> str:
    if not key:
        return ""
    return key[len(prefix):] if key.startswith(prefix) else key


def _parse_logged_date(value: Optional[str]) -> Optional[datetime]:
    """Reading log dates look like '2024/03/01, 18:22:05'."""
    if not value:
        return None
    for fmt in ("%Y/%m/%d, %H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, dict):
        value = value.get("value")
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def book_from_shelf_entry(entry: Dict[str, Any]) -> Book:
    """
    Build a Book from a reading-log entry.

    Entries look like ``{"work": {...}, "logged_edition": "/books/OL1M",
    "logged_date": "..."}``. The logged edition wins over the work's lending
    or cover edition.
    """
    work = entry.get("work") or {}
    work_id = _strip_prefix(work.get("key"), "/works/")

    edition_id = _strip_prefix(entry.get("logged_edition"), "/books/")
    if not edition_id:
        edition_id = work.get("lending_edition_s") or work.get("cover_edition_key") or ""

    cover_edition_id = edition_id or work.get("cover_edition_key") or work.get("lending_edition_s")
    cover_id = work.get("cover_id")

    return Book(
        edition_id=edition_id,
        work_id=work_id,
        title=work.get("title") or "Unknown Title",
        authors=tuple(work.get("author_names") or ()),
        cover_image_id=int(cover_id) if isinstance(cover_id, (int, float)) else None,
        cover_edition_id=cover_edition_id or None,
        publish_date=str(work["first_publish_year"]) if work.get("first_publish_year") else None,
        availability=(work.get("availability") or {}).get("status"),
        ia_id=(work.get("ia") or [None])[0] if isinstance(work.get("ia"), list) else work.get("ia"),
        added_date=_parse_logged_date(entry.get("logged_date")),
    )


def book_from_search_doc(doc: Dict[str, Any]) -> Book:
    """Build a Book from a search.json document."""
    editions = doc.get("edition_key") or []
    publishers = doc.get("publisher") or []
    ia_ids = doc.get("ia") or []
    return Book(
        edition_id=doc.get("cover_edition_key") or (editions[0] if editions else ""),
        work_id=_strip_prefix(doc.get("key"), "/works/"),
        title=doc.get("title") or "Unknown Title",
        authors=tuple(doc.get("author_name") or ()),
        cover_image_id=doc.get("cover_i"),
        cover_edition_id=doc.get("cover_edition_key"),
        publish_date=str(doc["first_publish_year"]) if doc.get("first_publish_year") else None,
        publisher=publishers[0] if publishers else None,
        number_of_pages=doc.get("number_of_pages_median"),
        isbn=tuple(doc.get("isbn") or ())[:10],
        availability=(doc.get("availability") or {}).get("status"),
        ia_id=ia_ids[0] if ia_ids else None,
    )


def book_from_edition_details(edition_id: str, data: Dict[str, Any]) -> Book:
    """Build a Book from an /api/books ``jscmd=data`` entry."""
    identifiers = data.get("identifiers") or {}
    works = data.get("works") or []
    covers = data.get("cover") or {}
    publishers = data.get("publishers") or []
    cover_url = covers.get("medium") or covers.get("large") or covers.get("small")
    return Book(
        edition_id=edition_id,
        work_id=_strip_prefix(works[0].get("key"), "/works/") if works else "",
        title=data.get("title") or "Unknown Title",
        authors=tuple(a.get("name") for a in data.get("authors") or () if a.get("name")),
        cover_url=cover_url,
        cover_edition_id=edition_id if cover_url else None,
        publish_date=data.get("publish_date"),
        publisher=publishers[0].get("name") if publishers else None,
        number_of_pages=data.get("number_of_pages"),
        isbn=tuple(identifiers.get("isbn_13") or ()) + tuple(identifiers.get("isbn_10") or ()),
    )


def merge_edition_record(book: Book, record: Dict[str, Any], author_names: Iterable[str] = ()) -> Book:
    """
    Copy of ``book`` refreshed from a ``/books/{id}.json`` edition record.

    Fields the record leaves empty keep their previous values. The work
    identity and the date the book was shelved never change.
    """
    covers = [c for c in record.get("covers") or () if isinstance(c, int) and c > 0]
    publishers = record.get("publishers") or []
    description = record.get("description")
    if isinstance(description, dict):
        description = description.get("value")
    isbn = tuple(record.get("isbn_10") or ()) + tuple(record.get("isbn_13") or ())

    return replace(
        book,
        title=record.get("title") or book.title,
        authors=tuple(author_names) or book.authors,
        cover_image_id=covers[0] if covers else book.cover_image_id,
        cover_edition_id=book.edition_id,
        publish_date=record.get("publish_date") or book.publish_date,
        publisher=publishers[0] if publishers and isinstance(publishers[0], str) else book.publisher,
        number_of_pages=record.get("number_of_pages") or book.number_of_pages,
        isbn=isbn or book.isbn,
        description=description or book.description,
        ia_id=record.get("ocaid") or book.ia_id,
        last_modified=datetime.now(timezone.utc),
    )


def book_list_from_json(entry: Dict[str, Any]) -> BookList:
    return BookList(
        url=entry.get("url") or "",
        full_url=entry.get("full_url") or "",
        name=entry.get("name") or "",
        seed_count=entry.get("seed_count") or 0,
        last_update=_parse_timestamp(entry.get("last_update")),
    )


def seed_key(work_id: str, edition_id: str = "") -> str:
    """Lists accept edition seeds in preference to work seeds."""
    return f"/books/{edition_id}" if edition_id else f"/works/{work_id}"


class OpenLibraryClient(BaseClient):
    """
    Client for the Open Library JSON API.

    Provides reading-log shelves, lists, loans and work lookups for the
    account identified by the session cookie.
    """

    def __init__(
        self,
        session_cookie: Optional[str],
        username: Optional[str] = None,
        base_url: str = OPENLIBRARY_URL,
        timeout: int = 30,
    ):
        """
        Initialize Open Library client.

        Args:
            session_cookie: Value of the ``session`` cookie
            username: Account name; extracted from the cookie when omitted
            base_url: Open Library base URL
            timeout: Request timeout in seconds
        """
        super().__init__(base_url, timeout=timeout, user_agent=USER_AGENT)
        self.session_cookie = session_cookie
        self._username = username

    @property
    def username(self) -> str:
        if self._username:
            return self._username
        if not self.session_cookie:
            raise AuthError("Not logged in")
        match = _USER_FROM_COOKIE.search(unquote(self.session_cookie))
        if not match:
            raise AuthError("Invalid session")
        self._username = match.group(1)
        return self._username

    def _auth_headers(self) -> Dict[str, str]:
        if not self.session_cookie:
            raise AuthError("Not logged in")
        return {"Cookie": f"session={self.session_cookie}"}

    def _authed_get(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        return self.get(endpoint, headers=self._auth_headers(), **kwargs)

    def _authed_post(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        return self.post(endpoint, headers=self._auth_headers(), **kwargs)

    def test_connection(self) -> bool:
        """
        Test connection to Open Library with the configured session.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            self._authed_get(f"/people/{self.username}/lists.json", params={"limit": 1})
            return True
        except Exception as e:
            logger.error("Failed to connect to Open Library", error=str(e))
            return False

    # Shelves

    def fetch_shelf(self, shelf_key: str) -> Shelf:
        """
        Fetch every page of a reading-log shelf.

        Pages are requested until the accumulated entries reach the reported
        ``numFound`` or a page comes back empty.

        Args:
            shelf_key: Shelf key (e.g. 'want-to-read')

        Returns:
            Complete Shelf with ``last_synced_at`` set to now
        """
        endpoint = f"/people/{self.username}/books/{shelf_key}.json"
        entries: List[Dict[str, Any]] = []
        total: Optional[int] = None
        page = 1

        while True:
            data = self._authed_get(endpoint, params={"page": page})
            if not isinstance(data, dict) or "reading_log_entries" not in data:
                raise ServerError(f"Unexpected shelf payload for {shelf_key}")
            page_entries = data.get("reading_log_entries") or []
            if total is None:
                total = int(data.get("numFound") or 0)
            entries.extend(page_entries)
            if not page_entries or len(entries) >= total:
                break
            page += 1

        books = []
        for entry in entries:
            try:
                books.append(book_from_shelf_entry(entry))
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping unparseable shelf entry", shelf=shelf_key, error=str(e))

        logger.debug("Fetched shelf", shelf=shelf_key, pages=page, books=len(books), total=total)
        # total_count matches the books actually loaded
        return shelf_config(shelf_key).to_shelf(
            books=books,
            total_count=len(books),
            last_synced_at=datetime.now(timezone.utc),
        )

    def fetch_shelves(self, shelf_keys: Iterable[str]) -> List[Shelf]:
        return [self.fetch_shelf(key) for key in shelf_keys]

    def set_bookshelf(self, work_id: str, edition_id: Optional[str], shelf_key: str) -> None:
        """
        Put a work on a reading-log shelf, or take it off with the sentinel.

        Args:
            work_id: Work ID (e.g. 'OL472814W')
            edition_id: Optional edition ID logged with the work
            shelf_key: Target shelf key or REMOVE_FROM_ALL_SHELVES
        """
        if shelf_key == REMOVE_FROM_ALL_SHELVES:
            bookshelf_id = -1
        else:
            bookshelf_id = shelf_config(shelf_key).remote_id

        form = {
            "action": "add",
            "redir": "false",
            "bookshelf_id": str(bookshelf_id),
            "dont_remove": "true",
        }
        if edition_id:
            form["edition_id"] = f"/books/{edition_id}"

        self._authed_post(f"/works/{work_id}/bookshelves.json", data=form)
        logger.debug("Updated bookshelf", work_id=work_id, edition_id=edition_id, shelf=shelf_key)

    # Lists

    def fetch_book_lists(self) -> List[BookList]:
        data = self._authed_get(f"/people/{self.username}/lists.json")
        return [book_list_from_json(e) for e in data.get("entries") or () if isinstance(e, dict)]

    def fetch_list_seeds(self, list_url: str) -> List[Dict[str, Any]]:
        if list_url.endswith(".json"):
            seeds_url = list_url[:-len(".json")] + "/seeds.json"
        else:
            seeds_url = f"{list_url}/seeds.json"
        data = self._authed_get(seeds_url)
        return [e for e in data.get("entries") or () if isinstance(e, dict)]

    def update_list_seeds(self, list_url: str, add: Iterable[str] = (), remove: Iterable[str] = ()) -> None:
        payload: Dict[str, List[Dict[str, str]]] = {}
        if add:
            payload["add"] = [{"key": key} for key in add]
        if remove:
            payload["remove"] = [{"key": key} for key in remove]
        self._authed_post(f"{list_url}/seeds.json", json=payload)

    def resolve_seeds(self, seeds: List[Dict[str, Any]]) -> List[DisplayItem]:
        """
        Turn raw list seeds into display items.

        Works are looked up in batches through the search API and editions
        through the books API; author seeds use the data on the seed itself.
        Other seed types (subjects) are skipped.
        """
        work_keys = [s["url"] for s in seeds if str(s.get("url", "")).startswith("/works/")]
        edition_keys = [s["url"] for s in seeds if str(s.get("url", "")).startswith("/books/")]
        author_seeds = [s for s in seeds if str(s.get("url", "")).startswith("/authors/")]

        items: List[DisplayItem] = []
        items.extend(BookDisplayItem(b) for b in self.search_works(work_keys))
        items.extend(BookDisplayItem(b) for b in self.fetch_editions(edition_keys))
        for seed in author_seeds:
            covers = seed.get("picture") or seed.get("covers") or []
            photo_id = covers[0] if isinstance(covers, list) and covers and isinstance(covers[0], int) else None
            items.append(AuthorDisplayItem(Author(
                id=_strip_prefix(seed["url"], "/authors/"),
                name=seed.get("title") or seed.get("name") or "Unknown Author",
                photo_id=photo_id,
            )))
        return items

    def search_works(self, work_keys: List[str]) -> List[Book]:
        books: List[Book] = []
        for start in range(0, len(work_keys), WORK_BATCH_SIZE):
            batch = work_keys[start:start + WORK_BATCH_SIZE]
            data = self.get(
                "/search.json",
                params={"q": f"key:({' OR '.join(batch)})", "fields": SEARCH_FIELDS, "limit": len(batch)},
            )
            books.extend(book_from_search_doc(doc) for doc in data.get("docs") or () if isinstance(doc, dict))
        return books

    def fetch_editions(self, edition_keys: List[str]) -> List[Book]:
        books: List[Book] = []
        for start in range(0, len(edition_keys), EDITION_BATCH_SIZE):
            batch = [_strip_prefix(k, "/books/") for k in edition_keys[start:start + EDITION_BATCH_SIZE]]
            data = self.get(
                "/api/books",
                params={"bibkeys": ",".join(f"OLID:{e}" for e in batch), "jscmd": "data", "format": "json"},
            )
            for edition_id in batch:
                details = data.get(f"OLID:{edition_id}")
                if isinstance(details, dict):
                    books.append(book_from_edition_details(edition_id, details))
        return books

    # Loans and works

    def fetch_loans(self) -> Dict[str, Dict[str, Any]]:
        """Current loans keyed by edition ID."""
        data = self._authed_get("/account/loans.json")
        loans = {}
        for loan in data.get("loans") or ():
            edition_id = _strip_prefix(loan.get("book"), "/books/")
            if edition_id:
                loans[edition_id] = loan
        return loans

    def fetch_edition(self, edition_id: str) -> Dict[str, Any]:
        return self.get(f"/books/{edition_id}.json")

    def fetch_work(self, work_id: str) -> Dict[str, Any]:
        return self.get(f"/works/{work_id}.json")

    def resolve_work_redirect(self, work_id: str, max_hops: int = 1) -> WorkResolution:
        """
        Fetch a work, following ``/type/redirect`` records.

        Args:
            work_id: Work ID to resolve
            max_hops: Maximum number of redirects to follow

        Returns:
            WorkResolution with the final work record and the new work ID
            (None when the work was not redirected)
        """
        current_id = work_id
        work = self.fetch_work(current_id)
        hops = 0

        while hops < max_hops and (work.get("type") or {}).get("key") == "/type/redirect":
            location = work.get("location") or ""
            if not location.startswith("/works/"):
                break
            current_id = _strip_prefix(location, "/works/")
            work = self.fetch_work(current_id)
            hops += 1

        if (work.get("type") or {}).get("key") == "/type/redirect":
            logger.warning("Redirect chain longer than allowed", work_id=work_id, max_hops=max_hops)

        return WorkResolution(
            work=work,
            new_work_id=current_id if current_id != work_id else None,
            hops=hops,
        )

    def fetch_author_names(self, author_keys: Iterable[str]) -> List[str]:
        names = []
        for key in author_keys:
            try:
                author = self.get(f"{key}.json")
            except APIError as e:
                logger.warning("Failed to fetch author", author=key, error=str(e))
                continue
            if author.get("name"):
                names.append(author["name"])
        return names
