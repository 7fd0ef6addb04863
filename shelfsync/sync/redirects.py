"""
Background repair of shelf entries whose work was merged server-side.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Tuple

from shelfsync.sync.models import (
    Book,
    Loaded,
    REMOVE_FROM_ALL_SHELVES,
    Shelf,
    WorkResolution,
    remove_book,
)
from shelfsync.sync.repository import ShelfRepository, WorkResolutionCollaborator
from shelfsync.sync.store import StateStore
from shelfsync.utils.logging import get_logger, log_context, new_run_id

logger = get_logger(__name__)

Spawn = Callable[[Awaitable[Any]], Any]
Replacements = Dict[Tuple[str, str], Book]


def _author_names(work: Dict[str, Any]) -> List[str]:
    if work.get("author_names"):
        return [name for name in work["author_names"] if name]
    names = []
    for entry in work.get("authors") or ():
        if isinstance(entry, str):
            names.append(entry)
        elif isinstance(entry, dict) and entry.get("name"):
            names.append(entry["name"])
    return names


def build_redirected_book(book: Book, resolution: WorkResolution) -> Book:
    """
    Copy of ``book`` carrying the resolved work ID and metadata.

    The resolved work's first cover replaces the old cover fields; when it
    has none the previous cover data is kept.
    """
    work = resolution.work
    covers = [c for c in work.get("covers") or () if isinstance(c, int) and c > 0]
    if covers:
        cover_image_id, cover_edition_id = covers[0], None
    else:
        cover_image_id, cover_edition_id = book.cover_image_id, book.cover_edition_id

    return replace(
        book,
        work_id=resolution.new_work_id,
        title=work.get("title") or book.title,
        authors=tuple(_author_names(work)) or book.authors,
        cover_image_id=cover_image_id,
        cover_edition_id=cover_edition_id,
        last_modified=datetime.now(timezone.utc),
    )


def apply_replacements(shelves: Tuple[Shelf, ...], replacements: Replacements) -> Tuple[Tuple[Shelf, ...], int]:
    """
    Swap redirected books into ``shelves`` in place.

    Entries that are no longer on the shelf they were found on are skipped.
    The canonical work is removed from every other shelf, and an entry is
    dropped instead of duplicated when the shelf already holds the
    canonical work.

    Returns:
        The new shelves and the number of replacements applied
    """
    updated = list(shelves)
    applied = 0
    for (shelf_key, old_work_id), new_book in replacements.items():
        index = next((i for i, s in enumerate(updated) if s.key == shelf_key), None)
        if index is None:
            continue
        shelf = updated[index]
        position = next((i for i, b in enumerate(shelf.books) if b.work_id == old_work_id), None)
        if position is None:
            continue

        books = list(shelf.books)
        if any(b.work_id == new_book.work_id for i, b in enumerate(books) if i != position):
            del books[position]
        else:
            books[position] = new_book
        removed = len(shelf.books) - len(books)
        updated[index] = replace(shelf, books=tuple(books), total_count=shelf.total_count - removed)

        updated = [
            s if s.key == shelf_key else remove_book((s,), new_book.work_id)[0]
            for s in updated
        ]
        applied += 1
    return tuple(updated), applied


class RedirectResolver:
    """
    Finds shelf entries that look like redirected works and repairs them.

    A pass scans a snapshot of every shelf, resolves candidates one at a
    time, then applies all replacements to the latest state in a single
    emit. The matching server-side move is started as a detached task per
    book and only logged on failure.
    """

    def __init__(
        self,
        store: StateStore,
        works: WorkResolutionCollaborator,
        shelves: ShelfRepository,
        spawn: Spawn,
    ):
        self.store = store
        self.works = works
        self.shelves = shelves
        self._spawn = spawn
        self._running = False
        self._rerun = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> int:
        """
        Run a resolution pass.

        A request that arrives while a pass is running is not dropped: the
        running pass scans the latest state again once it finishes.

        Returns:
            Number of shelf entries updated by this call
        """
        if self._running:
            logger.debug("Redirect pass already running, queued another")
            self._rerun = True
            return 0

        self._running = True
        applied = 0
        try:
            while True:
                self._rerun = False
                snapshot = self.store.state
                if self.store.disposed or not isinstance(snapshot, Loaded):
                    break
                with log_context(redirect_pass=new_run_id()):
                    applied += await self._run(snapshot)
                if not self._rerun:
                    break
        finally:
            self._running = False
            self._rerun = False
        return applied

    async def _run(self, snapshot: Loaded) -> int:
        replacements: Replacements = {}
        candidates = 0
        total_books = 0

        for shelf in snapshot.shelves:
            for book in shelf.books:
                total_books += 1
                if not book.needs_redirect_check or (shelf.key, book.work_id) in replacements:
                    continue
                candidates += 1

                try:
                    resolution = await self.works.resolve_work_redirect(book.work_id)
                except Exception as e:
                    logger.warning("Failed to resolve work redirect", work_id=book.work_id, shelf=shelf.key, error=str(e))
                    continue

                if self.store.disposed:
                    return 0
                if not resolution.new_work_id or resolution.new_work_id == book.work_id:
                    continue

                updated = build_redirected_book(book, resolution)
                replacements[(shelf.key, book.work_id)] = updated
                logger.info(
                    "Resolved redirected work",
                    shelf=shelf.key,
                    old_work_id=book.work_id,
                    new_work_id=updated.work_id,
                    title=updated.title,
                )
                self._spawn(self.reconcile_remote(book, updated, shelf.key))

        logger.debug(
            "Redirect pass scanned shelves",
            shelves=len(snapshot.shelves),
            books=total_books,
            candidates=candidates,
            resolved=len(replacements),
        )
        if not replacements:
            return 0

        # Apply against whatever is current now, not the scanned snapshot
        await asyncio.sleep(0)
        latest = self.store.state
        if not isinstance(latest, Loaded):
            logger.debug("State no longer loaded, dropping redirect updates")
            return 0

        shelves, applied = apply_replacements(latest.shelves, replacements)
        if applied:
            self.store.emit(latest.evolve(shelves=shelves))
        return applied

    async def reconcile_remote(self, old_book: Book, new_book: Book, shelf_key: str) -> bool:
        """
        Move the shelf entry from the old work to the new one on the server.

        Returns:
            True if both steps succeeded
        """
        try:
            await self.shelves.set_bookshelf(old_book.work_id, old_book.edition_id, REMOVE_FROM_ALL_SHELVES)
            await self.shelves.set_bookshelf(new_book.work_id, new_book.edition_id, shelf_key)
        except Exception as e:
            logger.error(
                "Failed to move redirected work on server; remote shelf may be inconsistent",
                old_work_id=old_book.work_id,
                new_work_id=new_book.work_id,
                shelf=shelf_key,
                error=str(e),
            )
            return False
        logger.info("Redirected work updated on server", old_work_id=old_book.work_id, new_work_id=new_book.work_id)
        return True
