import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from shelfsync.api.base import ServerError
from shelfsync.auth import AuthState, AuthStateSource
from shelfsync.sync.engine import SyncEngine
from shelfsync.sync.models import Book, BookList, Loaded, Shelf, ShelfSortOrder, WorkResolution


def make_book(work_id: str, title: Optional[str] = None, edition_id: str = "", **kwargs) -> Book:
    if title is None:
        title = f"Title {work_id}"
    if "authors" not in kwargs and title not in ("", "Unknown Title"):
        kwargs["authors"] = ("Some Author",)
    return Book(edition_id=edition_id or f"{work_id}-E", work_id=work_id, title=title, **kwargs)


def make_shelf(key: str, books=(), **kwargs) -> Shelf:
    kwargs.setdefault("name", key)
    kwargs.setdefault("sort_order", ShelfSortOrder.TITLE)
    kwargs.setdefault("last_synced_at", datetime.now(timezone.utc))
    return Shelf(key=key, books=tuple(books), **kwargs)


class FakeShelfRepository:
    def __init__(self, shelves: List[Shelf] = ()):
        self.shelves: Dict[str, Shelf] = {s.key: s for s in shelves}
        self.keys = [s.key for s in shelves]
        self.loans: Dict[str, Dict[str, Any]] = {}
        self.book_details: Dict[str, Book] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, Any] = {}
        self.failing_shelves = set()
        self.gate: Optional[asyncio.Event] = None
        self.cleared = 0
        self.connected = True

    def _maybe_fail(self, name: str) -> None:
        error = self.failures.get(name)
        if isinstance(error, list):
            if error:
                raise error.pop(0)
        elif error is not None:
            raise error

    async def get_shelves(self, force_refresh: bool = False) -> List[Shelf]:
        self.calls.append(("get_shelves", force_refresh))
        self._maybe_fail("get_shelves")
        return [self.shelves[k] for k in self.keys if k in self.shelves]

    async def get_shelf(self, key: str, force_refresh: bool = False) -> Shelf:
        self.calls.append(("get_shelf", key, force_refresh))
        if self.gate is not None:
            await self.gate.wait()
        self._maybe_fail("get_shelf")
        if key in self.failing_shelves:
            raise ServerError(f"cannot load {key}")
        return self.shelves[key]

    async def get_configured_shelf_keys(self) -> List[str]:
        self.calls.append(("get_configured_shelf_keys",))
        self._maybe_fail("get_configured_shelf_keys")
        return list(self.keys)

    async def update_configured_shelf_keys(self, keys: List[str]) -> List[str]:
        self.calls.append(("update_configured_shelf_keys", tuple(keys)))
        self._maybe_fail("update_configured_shelf_keys")
        self.keys = list(keys)
        return self.keys

    async def check_connection(self) -> bool:
        return self.connected

    async def get_user_loans(self, force_refresh: bool = False) -> Dict[str, Dict[str, Any]]:
        self.calls.append(("get_user_loans", force_refresh))
        self._maybe_fail("get_user_loans")
        return dict(self.loans)

    async def clear_cache(self) -> None:
        self._maybe_fail("clear_cache")
        self.cleared += 1

    async def update_shelf_visibility(self, key: str, visible: bool) -> Shelf:
        self.calls.append(("update_shelf_visibility", key, visible))
        self._maybe_fail("update_shelf_visibility")
        return self.shelves[key]

    async def update_shelf_sort(self, key: str, order: ShelfSortOrder, ascending: bool) -> Shelf:
        self.calls.append(("update_shelf_sort", key, order, ascending))
        self._maybe_fail("update_shelf_sort")
        return self.shelves[key]

    async def move_book_to_shelf(self, book: Book, target_key: str) -> None:
        self.calls.append(("move_book_to_shelf", book.work_id, target_key))
        self._maybe_fail("move_book_to_shelf")

    async def remove_book_from_shelf(self, book: Book, key: str) -> None:
        self.calls.append(("remove_book_from_shelf", book.work_id, key))
        self._maybe_fail("remove_book_from_shelf")

    async def set_bookshelf(self, work_id: str, edition_id: Optional[str], shelf_key: str) -> None:
        self.calls.append(("set_bookshelf", work_id, edition_id, shelf_key))
        self._maybe_fail("set_bookshelf")

    async def refresh_book(self, book: Book, shelf_key: str) -> Book:
        self.calls.append(("refresh_book", book.work_id, shelf_key))
        self._maybe_fail("refresh_book")
        return self.book_details.get(book.work_id, book)

    def count(self, name: str, *args) -> int:
        return sum(1 for call in self.calls if call[0] == name and call[1:1 + len(args)] == args)


class FakeLists:
    def __init__(self, lists: List[BookList] = ()):
        self.lists = list(lists)
        self.items: Dict[str, list] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.cleared = 0

    async def get_book_lists(self) -> List[BookList]:
        self.calls.append(("get_book_lists",))
        if "get_book_lists" in self.failures:
            raise self.failures["get_book_lists"]
        return list(self.lists)

    async def get_list_seeds(self, url: str, force_refresh: bool = False) -> list:
        self.calls.append(("get_list_seeds", url, force_refresh))
        if "get_list_seeds" in self.failures:
            raise self.failures["get_list_seeds"]
        return list(self.items.get(url, []))

    async def add_seed(self, url: str, book: Book) -> None:
        self.calls.append(("add_seed", url, book.work_id))
        if "add_seed" in self.failures:
            raise self.failures["add_seed"]

    async def remove_seed(self, url: str, book: Book) -> None:
        self.calls.append(("remove_seed", url, book.work_id))
        if "remove_seed" in self.failures:
            raise self.failures["remove_seed"]

    def clear_cache(self) -> None:
        self.cleared += 1


class FakeResolver:
    def __init__(self, resolutions: Optional[Dict[str, WorkResolution]] = None):
        self.resolutions = resolutions or {}
        self.calls: List[str] = []

    async def resolve_work_redirect(self, work_id: str) -> WorkResolution:
        self.calls.append(work_id)
        result = self.resolutions.get(work_id)
        if isinstance(result, Exception):
            raise result
        return result or WorkResolution(work={"title": ""})


class FakePreferences:
    def __init__(self, selected: Optional[str] = None):
        self.selected = selected
        self.writes: List[Optional[str]] = []
        self.cleanups: List[set] = []
        self.adjustments: Dict[str, Dict[str, Any]] = {}

    async def get_selected_list_url(self) -> Optional[str]:
        return self.selected

    async def set_selected_list_url(self, url: Optional[str]) -> None:
        self.writes.append(url)
        self.selected = url

    async def cleanup_orphans(self, valid_book_ids) -> int:
        self.cleanups.append(set(valid_book_ids))
        return 0

    async def get_visual_adjustment(self, book_id: str) -> Optional[Dict[str, Any]]:
        return self.adjustments.get(book_id)

    async def save_visual_adjustment(self, book_id: str, settings: Dict[str, Any]) -> None:
        self.adjustments[book_id] = settings


@pytest.fixture
def repo():
    return FakeShelfRepository([
        make_shelf("want-to-read", [make_book("W1")], display_order=0),
        make_shelf("currently-reading", [], display_order=1),
        make_shelf("already-read", [make_book("W2"), make_book("W3")], display_order=2),
    ])


@pytest.fixture
def lists():
    return FakeLists()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def preferences():
    return FakePreferences()


@pytest.fixture
def auth():
    return AuthStateSource(AuthState.AUTHENTICATED)


def build_engine(repo, lists, resolver, preferences, auth, **kwargs) -> SyncEngine:
    kwargs.setdefault("refresh_debounce_seconds", 0.01)
    kwargs.setdefault("login_retry_delay_seconds", 0)
    return SyncEngine(
        shelves=repo,
        lists=lists,
        works=resolver,
        auth=auth,
        selection=preferences,
        side_records=preferences,
        **kwargs,
    )


def seed_loaded(engine: SyncEngine, repo: FakeShelfRepository, **kwargs) -> Loaded:
    state = Loaded(shelves=tuple(repo.shelves[k] for k in repo.keys), **kwargs)
    engine.store.emit(state)
    return state


@pytest.fixture
async def engine(repo, lists, resolver, preferences, auth):
    engine = build_engine(repo, lists, resolver, preferences, auth)
    yield engine
    engine.dispose()


@pytest.fixture
def emitted(engine):
    states = []
    engine.store.subscribe(states.append)
    return states
