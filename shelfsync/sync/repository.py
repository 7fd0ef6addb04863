"""
Collaborators of the sync engine and their Open Library implementations.

The engine depends only on the protocols below. The concrete classes run the
blocking HTTP client and database cache in worker threads and report
failures with the exceptions from ``shelfsync.api.base``.
"""

import asyncio
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple, TypeVar

from shelfsync.api.base import APIError, CacheError, ServerError, ValidationError, is_auth_failure
from shelfsync.api.openlibrary import OpenLibraryClient, merge_edition_record, seed_key
from shelfsync.db.cache import ShelfCache
from shelfsync.sync.models import (
    Book,
    BookList,
    DEFAULT_SHELVES,
    DisplayItem,
    REMOVE_FROM_ALL_SHELVES,
    Shelf,
    ShelfSortOrder,
    WorkResolution,
    move_book,
    remove_book,
)
from shelfsync.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ShelfRepository(Protocol):
    async def get_shelves(self, force_refresh: bool = False) -> List[Shelf]: ...

    async def get_shelf(self, key: str, force_refresh: bool = False) -> Shelf: ...

    async def get_configured_shelf_keys(self) -> List[str]: ...

    async def update_configured_shelf_keys(self, keys: List[str]) -> List[str]: ...

    async def get_user_loans(self, force_refresh: bool = False) -> Dict[str, Dict[str, Any]]: ...

    async def clear_cache(self) -> None: ...

    async def update_shelf_visibility(self, key: str, visible: bool) -> Shelf: ...

    async def update_shelf_sort(self, key: str, order: ShelfSortOrder, ascending: bool) -> Shelf: ...

    async def move_book_to_shelf(self, book: Book, target_key: str) -> None: ...

    async def remove_book_from_shelf(self, book: Book, key: str) -> None: ...

    async def set_bookshelf(self, work_id: str, edition_id: Optional[str], shelf_key: str) -> None: ...

    async def refresh_book(self, book: Book, shelf_key: str) -> Book: ...

    async def check_connection(self) -> bool: ...


class ListCollaborator(Protocol):
    async def get_book_lists(self) -> List[BookList]: ...

    async def get_list_seeds(self, url: str, force_refresh: bool = False) -> List[DisplayItem]: ...

    async def add_seed(self, url: str, book: Book) -> None: ...

    async def remove_seed(self, url: str, book: Book) -> None: ...

    def clear_cache(self) -> None: ...


class WorkResolutionCollaborator(Protocol):
    async def resolve_work_redirect(self, work_id: str) -> WorkResolution: ...


class SelectionStore(Protocol):
    async def get_selected_list_url(self) -> Optional[str]: ...

    async def set_selected_list_url(self, url: Optional[str]) -> None: ...


class SideRecordStore(Protocol):
    async def cleanup_orphans(self, valid_book_ids: Set[str]) -> int: ...

    async def get_visual_adjustment(self, book_id: str) -> Optional[Dict[str, Any]]: ...

    async def save_visual_adjustment(self, book_id: str, settings: Dict[str, Any]) -> None: ...


async def _in_thread(description: str, fn: Callable[..., T], *args, **kwargs) -> T:
    """Run blocking I/O in a worker thread, normalizing unexpected errors."""
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except APIError:
        raise
    except Exception as e:
        raise ServerError(f"Failed to {description}: {e}")


class OpenLibraryShelfRepository:
    """
    Shelves served from the local cache and refreshed from Open Library.
    """

    def __init__(self, client: OpenLibraryClient, cache: ShelfCache, loan_cache_seconds: int = 300):
        self.client = client
        self.cache = cache
        self.loan_cache_seconds = loan_cache_seconds
        self._loans: Optional[Dict[str, Dict[str, Any]]] = None
        self._loans_fetched_at = 0.0

    async def get_configured_shelf_keys(self) -> List[str]:
        return await _in_thread("get shelf keys", self.cache.get_configured_shelf_keys)

    async def update_configured_shelf_keys(self, keys: List[str]) -> List[str]:
        """
        Choose which reading-log shelves are synced, in display order.

        Raises:
            ValidationError: If no keys are given or a key is not a reading-log shelf
        """
        known = {config.key for config in DEFAULT_SHELVES}
        cleaned = list(dict.fromkeys(keys))
        if not cleaned:
            raise ValidationError("At least one shelf must be configured")
        unknown = [key for key in cleaned if key not in known]
        if unknown:
            raise ValidationError(f"Unknown shelf keys: {', '.join(unknown)}")
        await _in_thread("save shelf keys", self.cache.update_configured_shelf_keys, cleaned)
        logger.info("Configured shelves updated", shelves=cleaned)
        return cleaned

    def _apply_preferences(self, shelf: Shelf) -> Shelf:
        order, ascending = self.cache.get_shelf_sort(shelf.key)
        shelf = replace(
            shelf,
            sort_order=order,
            sort_ascending=ascending,
            is_visible=self.cache.get_shelf_visibility(shelf.key),
        )
        return replace(shelf, books=shelf.sorted_books())

    def _store(self, shelves: List[Shelf]) -> None:
        try:
            self.cache.cache_shelves(shelves)
        except CacheError as e:
            logger.warning("Failed to cache shelves", error=str(e))

    def _store_one(self, shelf: Shelf) -> None:
        try:
            self.cache.update_cached_shelf(shelf)
        except CacheError as e:
            logger.warning("Failed to cache shelf", shelf=shelf.key, error=str(e))

    def _fetch_and_cache(self, keys: List[str]) -> List[Shelf]:
        shelves = [self._apply_preferences(s) for s in self.client.fetch_shelves(keys)]
        self._store(shelves)
        return shelves

    def _cached(self) -> List[Shelf]:
        return [self._apply_preferences(s) for s in self.cache.get_cached_shelves()]

    async def get_shelves(self, force_refresh: bool = False) -> List[Shelf]:
        """
        Get all configured shelves.

        Args:
            force_refresh: Fetch from the server instead of the cache. If that
                fetch fails for a reason other than authentication, cached
                shelves are returned when there are any.

        Raises:
            APIError: If neither server nor cache can provide the shelves
        """
        keys = await self.get_configured_shelf_keys()

        if force_refresh:
            try:
                return await _in_thread("fetch shelves", self._fetch_and_cache, keys)
            except APIError as e:
                if is_auth_failure(e):
                    raise
                try:
                    shelves = await _in_thread("read cached shelves", self._cached)
                except CacheError:
                    raise e
                logger.info("Serving cached shelves after failed refresh", count=len(shelves), error=str(e))
                return shelves

        try:
            shelves = await _in_thread("read cached shelves", self._cached)
            logger.debug("Loaded shelves from cache", count=len(shelves))
            return shelves
        except CacheError as e:
            logger.debug("No usable shelf cache, fetching from server", error=str(e))
            return await _in_thread("fetch shelves", self._fetch_and_cache, keys)

    async def get_shelf(self, key: str, force_refresh: bool = False) -> Shelf:
        def fetch() -> Shelf:
            shelf = self._apply_preferences(self.client.fetch_shelf(key))
            self._store_one(shelf)
            return shelf

        if not force_refresh:
            try:
                return await _in_thread("read cached shelf", self.cache.get_cached_shelf, key)
            except CacheError:
                pass
        return await _in_thread("fetch shelf", fetch)

    async def get_user_loans(self, force_refresh: bool = False) -> Dict[str, Dict[str, Any]]:
        fresh = time.monotonic() - self._loans_fetched_at < self.loan_cache_seconds
        if self._loans is not None and fresh and not force_refresh:
            return dict(self._loans)
        loans = await _in_thread("fetch loans", self.client.fetch_loans)
        self._loans = loans
        self._loans_fetched_at = time.monotonic()
        return dict(loans)

    async def check_connection(self) -> bool:
        return await _in_thread("check connection", self.client.test_connection)

    async def clear_cache(self) -> None:
        self._loans = None
        self._loans_fetched_at = 0.0
        await _in_thread("clear cache", self.cache.clear_cache)

    async def update_shelf_visibility(self, key: str, visible: bool) -> Shelf:
        def update() -> Shelf:
            self.cache.update_shelf_visibility(key, visible)
            shelf = replace(self.cache.get_cached_shelf(key), is_visible=visible)
            self.cache.update_cached_shelf(shelf)
            return shelf

        return await _in_thread("update shelf visibility", update)

    async def update_shelf_sort(self, key: str, order: ShelfSortOrder, ascending: bool) -> Shelf:
        def update() -> Shelf:
            self.cache.update_shelf_sort(key, order, ascending)
            shelf = replace(self.cache.get_cached_shelf(key), sort_order=ShelfSortOrder(order), sort_ascending=ascending)
            shelf = replace(shelf, books=shelf.sorted_books())
            self.cache.update_cached_shelf(shelf)
            return shelf

        return await _in_thread("update shelf sort", update)

    async def set_bookshelf(self, work_id: str, edition_id: Optional[str], shelf_key: str) -> None:
        """Remote-only shelf write; the cache is left alone."""
        await _in_thread("update bookshelf", self.client.set_bookshelf, work_id, edition_id or None, shelf_key)

    async def move_book_to_shelf(self, book: Book, target_key: str) -> None:
        if not book.work_id:
            if not book.edition_id:
                raise ValidationError("Cannot add book to shelf: missing both work ID and edition ID")
            raise ValidationError("Cannot add book to shelf: work ID is required")

        await self.set_bookshelf(book.work_id, book.edition_id, target_key)

        def update_cache() -> None:
            shelves = self.cache.get_cached_shelves()
            self.cache.cache_shelves(move_book(shelves, book, target_key))

        try:
            await _in_thread("update cache", update_cache)
        except APIError as e:
            logger.warning("Failed to update cache after moving book", work_id=book.work_id, error=str(e))

    async def remove_book_from_shelf(self, book: Book, key: str) -> None:
        await self.set_bookshelf(book.work_id, book.edition_id, REMOVE_FROM_ALL_SHELVES)

        def update_cache() -> None:
            shelf = self.cache.get_cached_shelf(key)
            self.cache.update_cached_shelf(remove_book((shelf,), book.work_id)[0])

        try:
            await _in_thread("update cache", update_cache)
        except APIError as e:
            logger.warning("Failed to update cache after removing book", work_id=book.work_id, error=str(e))

    async def refresh_book(self, book: Book, shelf_key: str) -> Book:
        """
        Re-fetch the edition of a shelved book and update its cached entry.

        Raises:
            ValidationError: If the book has no edition ID
        """
        if not book.edition_id:
            raise ValidationError("Cannot refresh book: edition ID is required")

        def fetch() -> Book:
            record = self.client.fetch_edition(book.edition_id)
            author_keys = [
                entry["key"] for entry in record.get("authors") or ()
                if isinstance(entry, dict) and entry.get("key")
            ]
            return merge_edition_record(book, record, self.client.fetch_author_names(author_keys))

        updated = await _in_thread("refresh book", fetch)

        def update_cache() -> None:
            shelf = self.cache.get_cached_shelf(shelf_key)
            books = tuple(updated if b.work_id == book.work_id else b for b in shelf.books)
            self.cache.update_cached_shelf(replace(shelf, books=books))

        try:
            await _in_thread("update cache", update_cache)
        except APIError as e:
            logger.warning("Failed to update cache after refreshing book", work_id=book.work_id, error=str(e))
        return updated


class OpenLibraryListRepository:
    """
    User lists and their resolved contents.
    """

    def __init__(self, client: OpenLibraryClient, cache_seconds: int = 300):
        self.client = client
        self.cache_seconds = cache_seconds
        self._items: Dict[str, Tuple[float, List[DisplayItem]]] = {}

    async def get_book_lists(self) -> List[BookList]:
        return await _in_thread("fetch lists", self.client.fetch_book_lists)

    async def get_list_seeds(self, url: str, force_refresh: bool = False) -> List[DisplayItem]:
        cached = self._items.get(url)
        if cached and not force_refresh and time.monotonic() - cached[0] < self.cache_seconds:
            return list(cached[1])

        def resolve() -> List[DisplayItem]:
            return self.client.resolve_seeds(self.client.fetch_list_seeds(url))

        items = await _in_thread("fetch list seeds", resolve)
        self._items[url] = (time.monotonic(), items)
        return list(items)

    async def add_seed(self, url: str, book: Book) -> None:
        self._items.pop(url, None)
        await _in_thread("add book to list", self.client.update_list_seeds, url, add=[seed_key(book.work_id, book.edition_id)])

    async def remove_seed(self, url: str, book: Book) -> None:
        self._items.pop(url, None)
        await _in_thread("remove book from list", self.client.update_list_seeds, url, remove=[seed_key(book.work_id, book.edition_id)])

    def clear_cache(self) -> None:
        self._items.clear()


class OpenLibraryWorkResolver:
    """
    Resolves redirected works and fills in author names for the result.
    """

    def __init__(self, client: OpenLibraryClient, max_hops: int = 1):
        self.client = client
        self.max_hops = max_hops

    def _resolve(self, work_id: str) -> WorkResolution:
        resolution = self.client.resolve_work_redirect(work_id, max_hops=self.max_hops)
        work = dict(resolution.work)
        # Work records only reference authors by key
        author_keys = [
            (entry.get("author") or {}).get("key")
            for entry in work.get("authors") or ()
            if isinstance(entry, dict)
        ]
        author_keys = [key for key in author_keys if key]
        if author_keys and not work.get("author_names"):
            work["author_names"] = self.client.fetch_author_names(author_keys)
        return replace(resolution, work=work)

    async def resolve_work_redirect(self, work_id: str) -> WorkResolution:
        return await _in_thread("resolve work", self._resolve, work_id)


class PreferenceStore:
    """
    Persisted list selection and per-book side records.
    """

    def __init__(self, cache: ShelfCache):
        self.cache = cache

    async def get_selected_list_url(self) -> Optional[str]:
        return await _in_thread("read list selection", self.cache.get_selected_list_url)

    async def set_selected_list_url(self, url: Optional[str]) -> None:
        await _in_thread("save list selection", self.cache.set_selected_list_url, url)

    async def cleanup_orphans(self, valid_book_ids: Set[str]) -> int:
        return await _in_thread("clean up visual adjustments", self.cache.cleanup_orphans, valid_book_ids)

    async def get_visual_adjustment(self, book_id: str) -> Optional[Dict[str, Any]]:
        return await _in_thread("read visual adjustment", self.cache.get_visual_adjustment, book_id)

    async def save_visual_adjustment(self, book_id: str, settings: Dict[str, Any]) -> None:
        await _in_thread("save visual adjustment", self.cache.save_visual_adjustment, book_id, settings)
