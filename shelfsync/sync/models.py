"""
Data models for shelf synchronization.

Every value here is immutable. State changes are expressed by building new
values (``dataclasses.replace``) from the latest snapshot held by the store.
"""

import enum
import functools
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, Dict, Any, Iterable, Union


# Target key meaning "take the work off every reading-status shelf"
REMOVE_FROM_ALL_SHELVES = "-1"

PLACEHOLDER_TITLES = frozenset({"", "Unknown Title"})


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    # naive values are UTC, like every server date
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Book:
    """A single shelved edition of a work."""
    edition_id: str
    work_id: str
    title: str
    authors: Tuple[str, ...] = ()
    cover_url: Optional[str] = None
    cover_image_id: Optional[int] = None
    cover_edition_id: Optional[str] = None
    publish_date: Optional[str] = None
    publisher: Optional[str] = None
    number_of_pages: Optional[int] = None
    isbn: Tuple[str, ...] = ()
    description: Optional[str] = None
    availability: Optional[str] = None
    ia_id: Optional[str] = None
    added_date: Optional[datetime] = None
    last_modified: Optional[datetime] = None

    @property
    def needs_redirect_check(self) -> bool:
        """
        True when the record has a work identity but no usable metadata.

        The remote service returns this shape for works that were merged
        into another work, so the work id has to be resolved again.
        """
        return (
            bool(self.work_id)
            and self.title.strip() in PLACEHOLDER_TITLES
            and not self.authors
            and self.cover_image_id is None
        )

    @property
    def authors_string(self) -> str:
        return ", ".join(self.authors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edition_id": self.edition_id,
            "work_id": self.work_id,
            "title": self.title,
            "authors": list(self.authors),
            "cover_url": self.cover_url,
            "cover_image_id": self.cover_image_id,
            "cover_edition_id": self.cover_edition_id,
            "publish_date": self.publish_date,
            "publisher": self.publisher,
            "number_of_pages": self.number_of_pages,
            "isbn": list(self.isbn),
            "description": self.description,
            "availability": self.availability,
            "ia_id": self.ia_id,
            "added_date": _format_datetime(self.added_date),
            "last_modified": _format_datetime(self.last_modified),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Book":
        return cls(
            edition_id=data.get("edition_id") or "",
            work_id=data.get("work_id") or "",
            title=data.get("title") or "Unknown Title",
            authors=tuple(data.get("authors") or ()),
            cover_url=data.get("cover_url"),
            cover_image_id=data.get("cover_image_id"),
            cover_edition_id=data.get("cover_edition_id"),
            publish_date=data.get("publish_date"),
            publisher=data.get("publisher"),
            number_of_pages=data.get("number_of_pages"),
            isbn=tuple(data.get("isbn") or ()),
            description=data.get("description"),
            availability=data.get("availability"),
            ia_id=data.get("ia_id"),
            added_date=_parse_datetime(data.get("added_date")),
            last_modified=_parse_datetime(data.get("last_modified")),
        )


class ShelfSortOrder(str, enum.Enum):
    """Sort order options for shelves."""
    TITLE = "title"
    AUTHOR = "author"
    DATE_ADDED = "date_added"
    DATE_PUBLISHED = "date_published"


def sortable_title(title: str) -> str:
    """'The Great Gatsby' -> 'great gatsby, the'"""
    lowered = title.lower().strip()
    for article in ("the", "a", "an"):
        prefix = f"{article} "
        if lowered.startswith(prefix):
            return f"{lowered[len(prefix):]}, {article}"
    return lowered


def _compare_optional(a, b) -> int:
    # None sorts after everything
    if a is None and b is None:
        return 0
    if a is None:
        return 1
    if b is None:
        return -1
    return (a > b) - (a < b)


def _compare_publish_dates(a: Optional[str], b: Optional[str]) -> int:
    if a is None or b is None:
        return _compare_optional(a, b)
    try:
        return _compare_optional(int(a), int(b))
    except ValueError:
        return _compare_optional(a, b)


def _book_comparator(order: ShelfSortOrder):
    if order == ShelfSortOrder.TITLE:
        return lambda a, b: _compare_optional(sortable_title(a.title), sortable_title(b.title))
    if order == ShelfSortOrder.AUTHOR:
        def first_author(book: Book) -> str:
            return book.authors[0].lower() if book.authors else ""
        return lambda a, b: _compare_optional(first_author(a), first_author(b))
    if order == ShelfSortOrder.DATE_PUBLISHED:
        return lambda a, b: _compare_publish_dates(a.publish_date, b.publish_date)
    return lambda a, b: _compare_optional(a.added_date, b.added_date)


@dataclass(frozen=True)
class Shelf:
    """A named reading-status collection."""
    key: str
    name: str
    remote_name: str = ""
    remote_id: int = 0
    books: Tuple[Book, ...] = ()
    total_count: Optional[int] = None
    sort_order: ShelfSortOrder = ShelfSortOrder.DATE_ADDED
    sort_ascending: bool = True
    is_visible: bool = True
    display_order: int = 0
    last_synced_at: Optional[datetime] = None

    def __post_init__(self):
        if self.total_count is None:
            object.__setattr__(self, "total_count", len(self.books))

    def is_stale(self, threshold: timedelta, now: Optional[datetime] = None) -> bool:
        if self.last_synced_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - self.last_synced_at > threshold

    def sorted_books(self) -> Tuple[Book, ...]:
        """Books ordered by this shelf's sort configuration."""
        compare = _book_comparator(self.sort_order)
        if not self.sort_ascending:
            ascending_compare = compare
            compare = lambda a, b: ascending_compare(b, a)  # noqa: E731
        return tuple(sorted(self.books, key=functools.cmp_to_key(compare)))

    def find_book(self, work_id: str) -> Optional[Book]:
        return next((b for b in self.books if b.work_id == work_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "remote_name": self.remote_name,
            "remote_id": self.remote_id,
            "books": [b.to_dict() for b in self.books],
            "total_count": self.total_count,
            "sort_order": self.sort_order.value,
            "sort_ascending": self.sort_ascending,
            "is_visible": self.is_visible,
            "display_order": self.display_order,
            "last_synced_at": _format_datetime(self.last_synced_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Shelf":
        return cls(
            key=data["key"],
            name=data.get("name") or data["key"],
            remote_name=data.get("remote_name") or "",
            remote_id=data.get("remote_id") or 0,
            books=tuple(Book.from_dict(b) for b in data.get("books") or ()),
            total_count=data.get("total_count"),
            sort_order=ShelfSortOrder(data.get("sort_order") or ShelfSortOrder.DATE_ADDED.value),
            sort_ascending=data.get("sort_ascending", True),
            is_visible=data.get("is_visible", True),
            display_order=data.get("display_order") or 0,
            last_synced_at=_parse_datetime(data.get("last_synced_at")),
        )


@dataclass(frozen=True)
class ShelfConfig:
    """Static description of a reading-status shelf."""
    key: str
    name: str
    remote_name: str
    remote_id: int
    display_order: int

    def to_shelf(self, books: Iterable[Book] = (), total_count: Optional[int] = None,
                 last_synced_at: Optional[datetime] = None) -> Shelf:
        return Shelf(
            key=self.key,
            name=self.name,
            remote_name=self.remote_name,
            remote_id=self.remote_id,
            books=tuple(books),
            total_count=total_count,
            display_order=self.display_order,
            last_synced_at=last_synced_at,
        )


DEFAULT_SHELVES: Tuple[ShelfConfig, ...] = (
    ShelfConfig("want-to-read", "To Read", "Want to Read", 1, 0),
    ShelfConfig("currently-reading", "Reading", "Currently Reading", 2, 1),
    ShelfConfig("already-read", "Have Read", "Already Read", 3, 2),
)


def shelf_config(key: str) -> ShelfConfig:
    """Configuration for a shelf key; unknown keys get a generic entry."""
    for config in DEFAULT_SHELVES:
        if config.key == key:
            return config
    return ShelfConfig(key, key, key, 0, 99)


@dataclass(frozen=True)
class BookList:
    """A user-curated list."""
    url: str
    name: str
    seed_count: int = 0
    full_url: str = ""
    last_update: Optional[datetime] = None

    @property
    def list_id(self) -> str:
        return self.url.rstrip("/").split("/")[-1]


@dataclass(frozen=True)
class Author:
    id: str
    name: str
    photo_id: Optional[int] = None


@dataclass(frozen=True)
class BookDisplayItem:
    """A book seed resolved for display."""
    book: Book

    @property
    def id(self) -> str:
        return self.book.work_id

    @property
    def primary_text(self) -> str:
        return self.book.title

    @property
    def secondary_text(self) -> str:
        return self.book.authors_string

    @property
    def cover_image_id(self) -> Optional[int]:
        return self.book.cover_image_id


@dataclass(frozen=True)
class AuthorDisplayItem:
    """An author seed resolved for display."""
    author: Author

    @property
    def id(self) -> str:
        return self.author.id

    @property
    def primary_text(self) -> str:
        return self.author.name

    @property
    def secondary_text(self) -> str:
        return "Author"

    @property
    def cover_image_id(self) -> Optional[int]:
        return self.author.photo_id


DisplayItem = Union[BookDisplayItem, AuthorDisplayItem]


# Sync state variants

@dataclass(frozen=True)
class Initial:
    """Nothing loaded."""


@dataclass(frozen=True)
class Loading:
    """First load in progress, no data yet."""


@dataclass(frozen=True)
class Loaded:
    """Steady state. ``is_refreshing`` is a UI hint, not a lock."""
    shelves: Tuple[Shelf, ...]
    book_lists: Tuple[BookList, ...] = ()
    is_refreshing: bool = False
    selected_list_url: Optional[str] = None
    list_items: Tuple[DisplayItem, ...] = ()
    is_loading_list_items: bool = False

    def evolve(self, **changes) -> "Loaded":
        for name in ("shelves", "book_lists", "list_items"):
            if name in changes:
                changes[name] = tuple(changes[name])
        return replace(self, **changes)

    def shelf(self, key: str) -> Optional[Shelf]:
        return next((s for s in self.shelves if s.key == key), None)

    def visible_shelves(self) -> Tuple[Shelf, ...]:
        return tuple(sorted(
            (s for s in self.shelves if s.is_visible),
            key=lambda s: s.display_order,
        ))


@dataclass(frozen=True)
class Error:
    message: str


SyncState = Union[Initial, Loading, Loaded, Error]


@dataclass
class WorkResolution:
    """Result of resolving a work id that may have been redirected."""
    work: Dict[str, Any]
    new_work_id: Optional[str] = None
    hops: int = 0


# Cross-collection operations over immutable shelf tuples

def remove_book(shelves: Iterable[Shelf], work_id: str, shelf_key: Optional[str] = None) -> Tuple[Shelf, ...]:
    """
    Drop ``work_id`` from the named shelf (or from every shelf when no key is
    given), decrementing each shelf's total by the number of removed entries.
    """
    updated = []
    for shelf in shelves:
        if shelf_key is not None and shelf.key != shelf_key:
            updated.append(shelf)
            continue
        kept = tuple(b for b in shelf.books if b.work_id != work_id)
        removed = len(shelf.books) - len(kept)
        if removed:
            shelf = replace(shelf, books=kept, total_count=max(shelf.total_count - removed, len(kept)))
        updated.append(shelf)
    return tuple(updated)


def move_book(shelves: Iterable[Shelf], book: Book, target_key: str) -> Tuple[Shelf, ...]:
    """
    Place ``book`` on the target shelf and take its work off every other shelf.

    On the target an entry with the same work id is replaced in place
    (edition change, total unchanged); otherwise the book is appended and the
    total incremented. The target is then re-sorted with its own settings.
    """
    updated = []
    for shelf in shelves:
        if shelf.key != target_key:
            updated.extend(remove_book((shelf,), book.work_id))
            continue
        books = list(shelf.books)
        index = next((i for i, b in enumerate(books) if b.work_id == book.work_id), None)
        if index is not None:
            books[index] = book
            shelf = replace(shelf, books=tuple(books))
        else:
            books.append(book)
            shelf = replace(shelf, books=tuple(books), total_count=shelf.total_count + 1)
        updated.append(replace(shelf, books=shelf.sorted_books()))
    return tuple(updated)


def replace_shelf(shelves: Iterable[Shelf], new_shelf: Shelf) -> Tuple[Shelf, ...]:
    """Swap the entry with the same key, leaving every other shelf untouched."""
    return tuple(new_shelf if s.key == new_shelf.key else s for s in shelves)


def shelf_membership_conflicts(shelves: Iterable[Shelf]) -> Dict[str, list]:
    """Work ids that appear on more than one shelf, mapped to those shelf keys."""
    seen: Dict[str, list] = {}
    for shelf in shelves:
        for work_id in {b.work_id for b in shelf.books}:
            seen.setdefault(work_id, []).append(shelf.key)
    return {work_id: keys for work_id, keys in seen.items() if len(keys) > 1}
