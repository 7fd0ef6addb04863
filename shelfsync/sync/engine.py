"""
Shelf state synchronization engine.

Keeps the user's shelves, lists and loans in a single published state and
reconciles it with the remote service.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Set

from shelfsync.api.base import APIError, NotFoundError, is_auth_failure
from shelfsync.api.openlibrary import OpenLibraryClient
from shelfsync.auth import AuthState, AuthStateSource
from shelfsync.config import SyncConfig
from shelfsync.db.cache import ShelfCache
from shelfsync.sync.models import (
    Book,
    BookList,
    Error,
    Initial,
    Loaded,
    Loading,
    Shelf,
    ShelfSortOrder,
    SyncState,
    move_book,
    remove_book,
    replace_shelf,
)
from shelfsync.sync.redirects import RedirectResolver
from shelfsync.sync.repository import (
    ListCollaborator,
    OpenLibraryListRepository,
    OpenLibraryShelfRepository,
    OpenLibraryWorkResolver,
    PreferenceStore,
    SelectionStore,
    ShelfRepository,
    SideRecordStore,
    WorkResolutionCollaborator,
)
from shelfsync.sync.scheduler import RefreshScheduler
from shelfsync.sync.store import StateStore
from shelfsync.utils.logging import get_logger, log_context

logger = get_logger(__name__)

LOAN_EXPIRY_FORMAT = "%Y-%m-%d %H:%M:%S"
NO_SHELVES_LOADED = "Failed to load any shelves"
LOGIN_LOAD_FAILED = "Failed to load shelves after login. Please try refreshing."


async def _value(value: Any) -> Any:
    return value


class SyncEngine:
    """
    Owns the shelf state and every operation that changes it.

    All operations run on one event loop and read the store when they
    resume, never a snapshot captured before an await. Failures of
    background work (redirect passes, reconciliation, loan refresh, orphan
    cleanup) are logged and never turn the state into Error.

    Auth transitions are queued by the listener and handled one at a time
    by a single worker task, so every edge is seen in order.
    """

    def __init__(
        self,
        shelves: ShelfRepository,
        lists: ListCollaborator,
        works: WorkResolutionCollaborator,
        auth: AuthStateSource,
        selection: SelectionStore,
        side_records: Optional[SideRecordStore] = None,
        store: Optional[StateStore] = None,
        staleness: timedelta = timedelta(hours=6),
        refresh_debounce_seconds: float = 0.2,
        login_retry_attempts: int = 1,
        login_retry_delay_seconds: float = 1.0,
    ):
        """
        Initialize sync engine.

        Args:
            shelves: Shelf repository
            lists: User list collaborator
            works: Resolver for redirected works
            auth: Auth state source to follow
            selection: Store for the persisted list selection
            side_records: Store of per-book records cleaned up on startup
            store: State store to publish to; a new one is created if omitted
            staleness: Age after which a shelf is refreshed by the stale check
            refresh_debounce_seconds: Delay before queued shelf refreshes run
            login_retry_attempts: Retries of the forced load right after login
            login_retry_delay_seconds: Delay before each of those retries
        """
        self.shelves = shelves
        self.lists = lists
        self.works = works
        self.auth = auth
        self.selection = selection
        self.side_records = side_records
        self.store = store or StateStore()

        self.staleness = staleness
        self.login_retry_attempts = login_retry_attempts
        self.login_retry_delay_seconds = login_retry_delay_seconds

        self.scheduler = RefreshScheduler(self._refresh_shelf_now, refresh_debounce_seconds)
        self.redirects = RedirectResolver(self.store, works, shelves, self._spawn)

        self._loans: Dict[str, Dict[str, Any]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._auth_events: asyncio.Queue = asyncio.Queue()
        self._auth_worker: Optional[asyncio.Task] = None
        self._previous_auth_state = auth.state

        auth.add_listener(self._on_auth_state_changed)

    @property
    def state(self) -> SyncState:
        return self.store.state

    # Background tasks

    def _spawn(self, coro: Awaitable[Any]) -> Optional[asyncio.Task]:
        if self.store.disposed:
            coro.close()
            return None
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", error=str(task.exception()))

    async def join_background(self) -> None:
        """Wait for detached work, including work spawned while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Auth bridge

    def _on_auth_state_changed(self, state: AuthState) -> None:
        if self.store.disposed:
            return
        self._auth_events.put_nowait(state)
        if self._auth_worker is None or self._auth_worker.done():
            self._auth_worker = asyncio.get_running_loop().create_task(self._process_auth_events())

    async def _process_auth_events(self) -> None:
        while True:
            current = await self._auth_events.get()
            previous = self._previous_auth_state
            try:
                with log_context(auth_transition=f"{previous.value}->{current.value}"):
                    await self._handle_auth_transition(previous, current)
            except Exception as e:
                # previous auth state is left unchanged
                logger.error(
                    "Failed to handle auth state change",
                    previous=previous.value,
                    current=current.value,
                    error=str(e),
                )
            else:
                self._previous_auth_state = current
            finally:
                self._auth_events.task_done()

    async def _handle_auth_transition(self, previous: AuthState, current: AuthState) -> None:
        logger.debug("Handling auth transition", previous=previous.value, current=current.value)

        if current == AuthState.UNAUTHENTICATED and previous in (AuthState.LOADING, AuthState.AUTHENTICATED):
            logger.info("Logged out, clearing shelf data")
            await self._clear_state_and_cache()
        elif previous == AuthState.UNAUTHENTICATED and current == AuthState.LOADING:
            logger.info("Login started, clearing cached shelf data")
            await self._clear_state_and_cache()
        elif current == AuthState.AUTHENTICATED and previous in (AuthState.LOADING, AuthState.UNAUTHENTICATED):
            logger.info("Login completed, reloading shelves")
            await self.load_shelves(force_refresh=True)
        elif current == AuthState.AUTHENTICATED and previous == AuthState.INITIAL:
            if not isinstance(self.store.state, Loaded):
                logger.info("Authenticated on startup, loading shelves")
                await self.load_shelves()

    async def wait_for_auth_events(self) -> None:
        """Wait until every queued auth transition has been handled."""
        await self._auth_events.join()

    async def _clear_state_and_cache(self) -> None:
        self.store.emit(Initial())
        self._loans = {}
        self.lists.clear_cache()
        await self.shelves.clear_cache()

    # Loading

    def _publish_loaded(self, shelves: Sequence[Shelf], book_lists: Sequence[BookList]) -> None:
        """Publish fresh shelves, keeping the list selection of the latest state."""
        latest = self.store.state
        if isinstance(latest, Loaded):
            self.store.emit(latest.evolve(shelves=shelves, book_lists=book_lists, is_refreshing=False))
        else:
            self.store.emit(Loaded(shelves=tuple(shelves), book_lists=tuple(book_lists)))

    def _clear_refreshing(self) -> bool:
        latest = self.store.state
        if isinstance(latest, Loaded):
            self.store.emit(latest.evolve(is_refreshing=False))
            return True
        return False

    async def load_shelves(self, force_refresh: bool = False) -> None:
        """
        Load shelves from the cache or the server.

        Existing data stays visible with ``is_refreshing`` set while the load
        runs. A forced load with nothing loaded yet reveals shelves one at a
        time. Failures never replace loaded data.

        Args:
            force_refresh: Skip the cache and fetch from the server
        """
        self.store.ensure_active()
        if not self.auth.is_authenticated:
            logger.debug("Not authenticated, skipping shelf load")
            return

        current = self.store.state
        if isinstance(current, Loaded):
            self.store.emit(current.evolve(is_refreshing=True))
            current_lists = current.book_lists
        else:
            self.store.emit(Loading())
            current_lists = ()
            if force_refresh:
                await self._load_progressively()
                return

        fetch_lists = force_refresh or not current_lists
        shelves_result, lists_result = await asyncio.gather(
            self.shelves.get_shelves(force_refresh=force_refresh),
            self.lists.get_book_lists() if fetch_lists else _value(list(current_lists)),
            return_exceptions=True,
        )
        if self.store.disposed:
            return

        if isinstance(lists_result, BaseException):
            logger.warning("Failed to load book lists", error=str(lists_result))
            lists_result = list(current_lists)

        if isinstance(shelves_result, BaseException):
            await self._handle_load_failure(shelves_result, lists_result)
            return

        logger.info("Shelves loaded", shelves=len(shelves_result), lists=len(lists_result), forced=force_refresh)
        self._publish_loaded(shelves_result, lists_result)
        if fetch_lists and lists_result:
            self._spawn(self._restore_persisted_list_selection())

    async def _handle_load_failure(self, error: BaseException, book_lists: List[BookList]) -> None:
        if is_auth_failure(error):
            logger.warning("Auth failure while loading shelves", error=str(error))
            if not self._clear_refreshing():
                self.store.emit(Initial())
            return

        if self._clear_refreshing():
            logger.warning("Shelf load failed, keeping existing data", error=str(error))
            return

        logger.error("Shelf load failed with nothing loaded, trying cache", error=str(error))
        try:
            shelves = await self.shelves.get_shelves(force_refresh=False)
        except APIError as cache_error:
            logger.error("No cached shelves to fall back on", error=str(cache_error))
            self.store.emit(Error(getattr(error, "message", str(error))))
            return
        self._publish_loaded(shelves, book_lists)

    async def _load_progressively(self) -> None:
        try:
            keys = await self.shelves.get_configured_shelf_keys()
        except APIError as e:
            if is_auth_failure(e):
                self.store.emit(Initial())
            else:
                self.store.emit(Error(e.message))
            return

        lists_task = asyncio.ensure_future(self.lists.get_book_lists())
        loaded: List[Shelf] = []
        auth_failed = False
        try:
            for key in keys:
                try:
                    shelf = await self.shelves.get_shelf(key, force_refresh=True)
                except APIError as e:
                    if is_auth_failure(e):
                        auth_failed = True
                        break
                    logger.warning("Failed to load shelf, continuing", shelf=key, error=str(e))
                    continue
                if self.store.disposed:
                    return
                loaded.append(shelf)
                logger.debug("Shelf loaded", shelf=key, books=len(shelf.books), loaded=len(loaded), total=len(keys))
                self.store.emit(Loaded(shelves=tuple(loaded), book_lists=(), is_refreshing=True))

            try:
                book_lists = await lists_task
            except APIError as e:
                logger.warning("Failed to load book lists", error=str(e))
                book_lists = []
        finally:
            if not lists_task.done():
                lists_task.cancel()

        if self.store.disposed:
            return
        if auth_failed:
            logger.warning("Auth failure during progressive load")
            if not self._clear_refreshing():
                self.store.emit(Initial())
            return
        if not loaded:
            await self._retry_after_login(book_lists)
            return

        logger.info("Shelves loaded progressively", shelves=len(loaded), lists=len(book_lists))
        self._publish_loaded(loaded, book_lists)
        if book_lists:
            self._spawn(self._restore_persisted_list_selection())

    async def _retry_after_login(self, book_lists: List[BookList]) -> None:
        """Retry the full load after a delay; the session may not be live yet."""
        if self.login_retry_attempts < 1:
            self.store.emit(Error(NO_SHELVES_LOADED))
            return

        self.store.emit(Loading())
        for attempt in range(1, self.login_retry_attempts + 1):
            await asyncio.sleep(self.login_retry_delay_seconds)
            if self.store.disposed:
                return
            try:
                shelves = await self.shelves.get_shelves(force_refresh=True)
            except APIError as e:
                if is_auth_failure(e):
                    self.store.emit(Initial())
                    return
                logger.warning("Shelf load retry failed", attempt=attempt, error=str(e))
                continue

            logger.info("Shelf load retry succeeded", attempt=attempt, shelves=len(shelves))
            self._publish_loaded(shelves, book_lists)
            if book_lists:
                self._spawn(self._restore_persisted_list_selection())
            return

        logger.error("Giving up on shelf load after login", attempts=self.login_retry_attempts)
        self.store.emit(Error(LOGIN_LOAD_FAILED))

    async def refresh_shelves(self) -> None:
        """Fetch all shelves, lists and loans from the server."""
        self.store.ensure_active()
        current = self.store.state
        if isinstance(current, Loaded):
            self.store.emit(current.evolve(is_refreshing=True))

        shelves_result, lists_result, loans_result = await asyncio.gather(
            self.shelves.get_shelves(force_refresh=True),
            self.lists.get_book_lists(),
            self.shelves.get_user_loans(force_refresh=True),
            return_exceptions=True,
        )
        if self.store.disposed:
            return

        if isinstance(loans_result, BaseException):
            logger.warning("Failed to refresh loans", error=str(loans_result))
        else:
            self._loans = loans_result

        if isinstance(shelves_result, BaseException):
            logger.warning("Shelf refresh failed", error=str(shelves_result))
            if not self._clear_refreshing() and not is_auth_failure(shelves_result):
                self.store.emit(Error(getattr(shelves_result, "message", str(shelves_result))))
            return

        latest = self.store.state
        if isinstance(lists_result, BaseException):
            logger.warning("Failed to refresh book lists", error=str(lists_result))
            lists_result = latest.book_lists if isinstance(latest, Loaded) else ()

        logger.info("Shelves refreshed", shelves=len(shelves_result))
        self._publish_loaded(shelves_result, lists_result)

    async def refresh_shelf(self, key: str) -> None:
        """
        Refresh one shelf from the server.

        Overlapping requests for the same shelf are coalesced; see
        RefreshScheduler.
        """
        self.store.ensure_active()
        if not isinstance(self.store.state, Loaded):
            return
        await self.scheduler.request_refresh(key)

    async def _refresh_shelf_now(self, key: str) -> None:
        current = self.store.state
        if self.store.disposed or not isinstance(current, Loaded):
            return
        self.store.emit(current.evolve(is_refreshing=True))

        shelf_result, loans_result = await asyncio.gather(
            self.shelves.get_shelf(key, force_refresh=True),
            self.shelves.get_user_loans(force_refresh=True),
            return_exceptions=True,
        )
        if self.store.disposed:
            return
        if not isinstance(loans_result, BaseException):
            self._loans = loans_result

        latest = self.store.state
        if not isinstance(latest, Loaded):
            return
        still_refreshing = bool(self.scheduler.in_flight - {key})

        if isinstance(shelf_result, BaseException):
            logger.warning("Shelf refresh failed, keeping existing data", shelf=key, error=str(shelf_result))
            self.store.emit(latest.evolve(is_refreshing=still_refreshing))
            return

        logger.info("Shelf refreshed", shelf=key, books=len(shelf_result.books))
        self.store.emit(latest.evolve(
            shelves=replace_shelf(latest.shelves, shelf_result),
            is_refreshing=still_refreshing,
        ))
        self._spawn(self.redirects.run())

    async def refresh_shelf_if_stale(self, key: str) -> bool:
        """
        Refresh ``key`` when it was last synced longer ago than the staleness threshold.

        Returns:
            True if a refresh was requested

        Raises:
            NotFoundError: If no shelf with that key is loaded
        """
        current = self.store.state
        if not isinstance(current, Loaded):
            return False
        shelf = current.shelf(key)
        if shelf is None:
            raise NotFoundError(f"Shelf not found: {key}")
        if not shelf.is_stale(self.staleness):
            return False
        await self.refresh_shelf(key)
        return True

    async def refresh_stale_shelves(self) -> List[str]:
        """Refresh every visible shelf that is stale. Returns their keys."""
        current = self.store.state
        if self.store.disposed or not isinstance(current, Loaded):
            return []
        stale = [s.key for s in current.visible_shelves() if s.is_stale(self.staleness)]
        for key in stale:
            await self.refresh_shelf(key)
        if stale:
            logger.info("Refreshed stale shelves", shelves=stale)
        return stale

    # Shelf mutations

    def _mutation_failed(self, action: str, error: APIError, **context) -> bool:
        logger.error(f"Failed to {action}", error=str(error), **context)
        if not is_auth_failure(error):
            self.store.emit(Error(error.message))
        return False

    async def move_book_to_shelf(self, book: Book, target_key: str) -> bool:
        """
        Move a book to another shelf, or off every shelf with the remove sentinel.

        The local state changes only after the server accepted the move.

        Returns:
            True if the move succeeded
        """
        self.store.ensure_active()
        try:
            await self.shelves.move_book_to_shelf(book, target_key)
        except APIError as e:
            return self._mutation_failed("move book", e, work_id=book.work_id, shelf=target_key)

        latest = self.store.state
        if isinstance(latest, Loaded):
            self.store.emit(latest.evolve(shelves=move_book(latest.shelves, book, target_key)))
        logger.info("Moved book", work_id=book.work_id, shelf=target_key)
        return True

    async def remove_book_from_shelf(self, book: Book, key: str) -> bool:
        """
        Returns:
            True if the book was removed
        """
        self.store.ensure_active()
        try:
            await self.shelves.remove_book_from_shelf(book, key)
        except APIError as e:
            return self._mutation_failed("remove book", e, work_id=book.work_id, shelf=key)

        latest = self.store.state
        if isinstance(latest, Loaded):
            self.store.emit(latest.evolve(shelves=remove_book(latest.shelves, book.work_id, key)))
        logger.info("Removed book", work_id=book.work_id, shelf=key)
        return True

    async def refresh_book(self, book: Book, shelf_key: str) -> bool:
        """
        Re-fetch one book's edition details and swap it into its shelf.

        A failed fetch is logged and the current state is republished
        unchanged.

        Returns:
            True if the book was updated
        """
        self.store.ensure_active()
        if not isinstance(self.store.state, Loaded):
            return False

        try:
            updated = await self.shelves.refresh_book(book, shelf_key)
        except APIError as e:
            logger.warning("Failed to refresh book", work_id=book.work_id, edition_id=book.edition_id, error=str(e))
            latest = self.store.state
            if isinstance(latest, Loaded):
                self.store.emit(latest.evolve())
            return False

        latest = self.store.state
        if not isinstance(latest, Loaded):
            return False
        shelf = latest.shelf(shelf_key)
        if shelf is None or shelf.find_book(book.work_id) is None:
            logger.debug("Refreshed book is no longer on its shelf", work_id=book.work_id, shelf=shelf_key)
            return False

        books = tuple(updated if b.work_id == book.work_id else b for b in shelf.books)
        self.store.emit(latest.evolve(shelves=replace_shelf(latest.shelves, replace(shelf, books=books))))
        logger.info("Refreshed book", work_id=book.work_id, shelf=shelf_key, title=updated.title)
        return True

    async def update_shelf_sort(self, key: str, order: ShelfSortOrder, ascending: bool) -> bool:
        self.store.ensure_active()
        order = ShelfSortOrder(order)
        try:
            updated = await self.shelves.update_shelf_sort(key, order, ascending)
        except APIError as e:
            return self._mutation_failed("update shelf sort", e, shelf=key)

        latest = self.store.state
        if isinstance(latest, Loaded):
            shelf = latest.shelf(key)
            if shelf is not None:
                updated = replace(shelf, sort_order=order, sort_ascending=ascending)
                updated = replace(updated, books=updated.sorted_books())
            self.store.emit(latest.evolve(shelves=replace_shelf(latest.shelves, updated)))
        return True

    async def update_shelf_visibility(self, key: str, visible: bool) -> bool:
        self.store.ensure_active()
        try:
            updated = await self.shelves.update_shelf_visibility(key, visible)
        except APIError as e:
            return self._mutation_failed("update shelf visibility", e, shelf=key)

        latest = self.store.state
        if isinstance(latest, Loaded):
            shelf = latest.shelf(key)
            if shelf is not None:
                updated = replace(shelf, is_visible=visible)
            self.store.emit(latest.evolve(shelves=replace_shelf(latest.shelves, updated)))
        return True

    async def update_configured_shelves(self, keys: Sequence[str]) -> bool:
        """
        Change which shelves are synced, then reload them from the server.

        Returns:
            True if the new shelf keys were saved
        """
        self.store.ensure_active()
        try:
            await self.shelves.update_configured_shelf_keys(list(keys))
        except APIError as e:
            return self._mutation_failed("update configured shelves", e, shelves=list(keys))
        await self.load_shelves(force_refresh=True)
        return True

    async def check_connection(self) -> bool:
        return await self.shelves.check_connection()

    # Loans

    async def refresh_user_loans(self) -> None:
        if not self.auth.is_authenticated:
            return
        try:
            loans = await self.shelves.get_user_loans(force_refresh=True)
        except APIError as e:
            logger.warning("Failed to refresh loans", error=str(e))
            return
        if self.store.disposed:
            return
        self._loans = loans

        # Republish so subscribers pick up the new loan data
        latest = self.store.state
        if isinstance(latest, Loaded):
            self.store.emit(latest.evolve())

    def loan_for_edition(self, edition_id: str) -> Optional[Dict[str, Any]]:
        return self._loans.get(edition_id)

    def loan_minutes_remaining(self, edition_id: str, now: Optional[datetime] = None) -> int:
        """Whole minutes until the loan on ``edition_id`` expires, 0 if unknown."""
        loan = self._loans.get(edition_id)
        if not loan:
            return 0
        try:
            expiry = datetime.strptime(loan["expiry"], LOAN_EXPIRY_FORMAT).replace(tzinfo=timezone.utc)
        except (KeyError, TypeError, ValueError):
            return 0
        now = now or datetime.now(timezone.utc)
        return int((expiry - now).total_seconds() / 60)

    # Lists

    async def select_list(self, url: str, force_refresh: bool = False) -> None:
        """
        Show the contents of a list.

        On failure the list stays selected with no items, which is distinct
        from having nothing selected.
        """
        current = self.store.state
        if not isinstance(current, Loaded):
            return
        self.store.emit(current.evolve(is_loading_list_items=True, selected_list_url=url, list_items=()))

        try:
            items = await self.lists.get_list_seeds(url, force_refresh=force_refresh)
        except APIError as e:
            logger.warning("Failed to load list", url=url, error=str(e))
            items = None

        latest = self.store.state
        if not isinstance(latest, Loaded) or latest.selected_list_url != url:
            return
        if items is None:
            self.store.emit(latest.evolve(is_loading_list_items=False, list_items=()))
            return

        self.store.emit(latest.evolve(is_loading_list_items=False, list_items=items))
        await self._persist_list_selection(url)

    def clear_list_selection(self) -> None:
        current = self.store.state
        if not isinstance(current, Loaded):
            return
        self.store.emit(current.evolve(selected_list_url=None, list_items=(), is_loading_list_items=False))
        self._spawn(self._persist_list_selection(None))

    async def refresh_current_list(self) -> None:
        current = self.store.state
        if not isinstance(current, Loaded) or current.selected_list_url is None:
            return
        await self.select_list(current.selected_list_url, force_refresh=True)

    async def _persist_list_selection(self, url: Optional[str]) -> None:
        try:
            await self.selection.set_selected_list_url(url)
        except APIError as e:
            logger.warning("Failed to save list selection", url=url, error=str(e))

    async def _restore_persisted_list_selection(self) -> None:
        current = self.store.state
        if not isinstance(current, Loaded) or current.selected_list_url is not None:
            return
        try:
            url = await self.selection.get_selected_list_url()
        except APIError as e:
            logger.warning("Failed to read saved list selection", error=str(e))
            return
        if not url:
            return

        latest = self.store.state
        if not isinstance(latest, Loaded) or latest.selected_list_url is not None:
            return
        if not any(book_list.url == url for book_list in latest.book_lists):
            logger.info("Saved list no longer exists, clearing selection", url=url)
            await self._persist_list_selection(None)
            return
        await self.select_list(url)

    async def _refetch_book_lists(self, fallback: Sequence[BookList]) -> Sequence[BookList]:
        try:
            return await self.lists.get_book_lists()
        except APIError as e:
            logger.warning("Failed to refresh book lists", error=str(e))
            return fallback

    async def add_book_to_list(self, book: Book, url: str) -> None:
        """
        Add a book to a list, then refresh list metadata and, if that list is
        displayed, its contents.

        Raises:
            APIError: If the server rejected the change
        """
        self.store.ensure_active()
        try:
            await self.lists.add_seed(url, book)
        except APIError as e:
            logger.error("Failed to add book to list", work_id=book.work_id, url=url, error=str(e))
            raise

        current = self.store.state
        if not isinstance(current, Loaded):
            return
        book_lists = await self._refetch_book_lists(current.book_lists)
        latest = self.store.state
        if not isinstance(latest, Loaded):
            return
        self.store.emit(latest.evolve(book_lists=book_lists))
        if latest.selected_list_url == url:
            await self.select_list(url, force_refresh=True)

    async def remove_book_from_current_list(self, book: Book) -> None:
        """
        Raises:
            APIError: If the server rejected the change
        """
        self.store.ensure_active()
        current = self.store.state
        if not isinstance(current, Loaded) or current.selected_list_url is None:
            return
        url = current.selected_list_url
        try:
            await self.lists.remove_seed(url, book)
        except APIError as e:
            logger.error("Failed to remove book from list", work_id=book.work_id, url=url, error=str(e))
            raise

        book_lists = await self._refetch_book_lists(current.book_lists)
        latest = self.store.state
        if not isinstance(latest, Loaded):
            return
        self.store.emit(latest.evolve(book_lists=book_lists))
        await self.select_list(url, force_refresh=True)

    # Lifecycle

    async def initialize(self) -> None:
        """Load shelves and loans, then start the background passes."""
        self.store.ensure_active()
        await asyncio.gather(self.load_shelves(), self.refresh_user_loans())
        self._spawn(self.redirects.run())
        self._spawn(self._cleanup_orphaned_records())

    # Side records

    async def get_visual_adjustment(self, book_id: str) -> Optional[Dict[str, Any]]:
        if self.side_records is None:
            return None
        return await self.side_records.get_visual_adjustment(book_id)

    async def save_visual_adjustment(self, book_id: str, settings: Dict[str, Any]) -> bool:
        """
        Store display settings for a book that is on a loaded shelf.

        Records are keyed by work or edition ID, the same IDs the startup
        cleanup keeps.

        Raises:
            ValueError: If no shelf holds the book
        """
        self.store.ensure_active()
        if self.side_records is None:
            return False
        current = self.store.state
        shelved = isinstance(current, Loaded) and any(
            book_id in (book.work_id, book.edition_id)
            for shelf in current.shelves
            for book in shelf.books
        )
        if not shelved:
            raise ValueError(f"Book is not on any loaded shelf: {book_id}")
        try:
            await self.side_records.save_visual_adjustment(book_id, dict(settings))
        except APIError as e:
            logger.warning("Failed to save visual adjustment", book_id=book_id, error=str(e))
            return False
        return True

    async def _cleanup_orphaned_records(self) -> int:
        current = self.store.state
        if self.side_records is None or not isinstance(current, Loaded):
            return 0

        valid_ids: Set[str] = set()
        for shelf in current.shelves:
            for book in shelf.books:
                if book.edition_id:
                    valid_ids.add(book.edition_id)
                if book.work_id:
                    valid_ids.add(book.work_id)
        if not valid_ids:
            return 0

        try:
            removed = await self.side_records.cleanup_orphans(valid_ids)
        except APIError as e:
            logger.warning("Failed to clean up orphaned book records", error=str(e))
            return 0
        if removed:
            logger.info("Removed orphaned book records", count=removed)
        return removed

    def dispose(self) -> None:
        """Stop listening, cancel background work and drop any late results."""
        if self.store.disposed:
            return
        logger.debug("Disposing sync engine")
        self.auth.remove_listener(self._on_auth_state_changed)
        self.scheduler.close()
        self.store.dispose()
        if self._auth_worker is not None:
            self._auth_worker.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._loans.clear()


def create_sync_engine(config: SyncConfig, auth: Optional[AuthStateSource] = None) -> Optional[SyncEngine]:
    """
    Create a sync engine backed by Open Library and the local cache.

    The database must already be initialized.

    Returns:
        SyncEngine if configured, None otherwise
    """
    if not config.is_configured():
        logger.warning("Sync engine not configured")
        return None

    client = OpenLibraryClient(
        config.session_cookie,
        username=config.username,
        base_url=config.openlibrary_url,
        timeout=config.http_timeout,
    )
    cache = ShelfCache()
    preferences = PreferenceStore(cache)
    logger.info("Initialized Open Library client", url=config.openlibrary_url)

    return SyncEngine(
        shelves=OpenLibraryShelfRepository(client, cache, loan_cache_seconds=config.loan_cache_seconds),
        lists=OpenLibraryListRepository(client, cache_seconds=config.list_cache_seconds),
        works=OpenLibraryWorkResolver(client, max_hops=config.redirect_max_hops),
        auth=auth or AuthStateSource(),
        selection=preferences,
        side_records=preferences,
        staleness=timedelta(hours=config.staleness_hours),
        refresh_debounce_seconds=config.refresh_debounce_ms / 1000,
        login_retry_attempts=config.login_retry_attempts,
        login_retry_delay_seconds=config.login_retry_delay_seconds,
    )
