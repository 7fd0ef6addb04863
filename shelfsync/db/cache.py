"""
Local shelf cache and preferences backed by the database.

All methods are blocking; the repository layer calls them from worker
threads. Database problems are raised as CacheError.
"""

import json
from contextlib import contextmanager
from datetime import timezone
from typing import Optional, List, Dict, Any, Iterable, Tuple, Set

from sqlalchemy.exc import SQLAlchemyError

from shelfsync.api.base import CacheError
from shelfsync.db.database import get_db_session
from shelfsync.db.models import CachedShelf, Preference, VisualAdjustment
from shelfsync.sync.models import DEFAULT_SHELVES, Shelf, ShelfSortOrder
from shelfsync.utils.logging import get_logger

logger = get_logger(__name__)

SHELF_KEYS_PREF = "shelves.configured_keys"
SELECTED_LIST_PREF = "lists.selected_url"
SORT_ORDER_PREF = "shelf.{key}.sort_order"
SORT_ASCENDING_PREF = "shelf.{key}.sort_ascending"
VISIBLE_PREF = "shelf.{key}.visible"


@contextmanager
def _cache_session():
    try:
        with get_db_session() as session:
            yield session
    except SQLAlchemyError as e:
        raise CacheError(f"Cache operation failed: {e}")


def _naive_utc(value):
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ShelfCache:
    """
    Cached shelves, preferences and per-book side records.
    """

    # Shelves

    def get_cached_shelves(self) -> List[Shelf]:
        """
        Returns:
            Cached shelves in their stored order

        Raises:
            CacheError: If nothing is cached
        """
        with _cache_session() as session:
            rows = session.query(CachedShelf).order_by(CachedShelf.position.asc()).all()
            if not rows:
                raise CacheError("No cached shelves")
            return [Shelf.from_dict(row.payload) for row in rows]

    def get_cached_shelf(self, key: str) -> Shelf:
        with _cache_session() as session:
            row = session.query(CachedShelf).filter(CachedShelf.key == key).first()
            if row is None:
                raise CacheError(f"Shelf not cached: {key}")
            return Shelf.from_dict(row.payload)

    def cache_shelves(self, shelves: Iterable[Shelf]) -> None:
        """Replace the whole shelf cache."""
        with _cache_session() as session:
            session.query(CachedShelf).delete()
            for position, shelf in enumerate(shelves):
                session.add(CachedShelf(
                    key=shelf.key,
                    payload=shelf.to_dict(),
                    position=position,
                    last_synced_at=_naive_utc(shelf.last_synced_at),
                ))

    def update_cached_shelf(self, shelf: Shelf) -> None:
        """Insert or replace a single cached shelf."""
        with _cache_session() as session:
            row = session.query(CachedShelf).filter(CachedShelf.key == shelf.key).first()
            if row is None:
                position = session.query(CachedShelf).count()
                row = CachedShelf(key=shelf.key, position=position)
                session.add(row)
            row.payload = shelf.to_dict()
            row.last_synced_at = _naive_utc(shelf.last_synced_at)

    def clear_cache(self) -> None:
        """Drop cached shelves and the list selection of the previous account."""
        with _cache_session() as session:
            session.query(CachedShelf).delete()
            session.query(Preference).filter(Preference.key == SELECTED_LIST_PREF).delete()
        logger.debug("Shelf cache cleared")

    # Preferences

    def _get_pref(self, key: str, default: Any = None) -> Any:
        with _cache_session() as session:
            row = session.query(Preference).filter(Preference.key == key).first()
            if row is None or row.value is None:
                return default
            return json.loads(row.value)

    def _set_pref(self, key: str, value: Any) -> None:
        with _cache_session() as session:
            row = session.query(Preference).filter(Preference.key == key).first()
            if value is None:
                if row is not None:
                    session.delete(row)
                return
            if row is None:
                row = Preference(key=key)
                session.add(row)
            row.value = json.dumps(value)

    def get_configured_shelf_keys(self) -> List[str]:
        return self._get_pref(SHELF_KEYS_PREF) or [config.key for config in DEFAULT_SHELVES]

    def update_configured_shelf_keys(self, keys: List[str]) -> None:
        self._set_pref(SHELF_KEYS_PREF, list(keys))

    def get_shelf_sort(self, key: str) -> Tuple[ShelfSortOrder, bool]:
        order = self._get_pref(SORT_ORDER_PREF.format(key=key), ShelfSortOrder.DATE_ADDED.value)
        ascending = self._get_pref(SORT_ASCENDING_PREF.format(key=key), True)
        try:
            return ShelfSortOrder(order), bool(ascending)
        except ValueError:
            return ShelfSortOrder.DATE_ADDED, bool(ascending)

    def update_shelf_sort(self, key: str, order: ShelfSortOrder, ascending: bool) -> None:
        self._set_pref(SORT_ORDER_PREF.format(key=key), ShelfSortOrder(order).value)
        self._set_pref(SORT_ASCENDING_PREF.format(key=key), bool(ascending))

    def get_shelf_visibility(self, key: str) -> bool:
        return bool(self._get_pref(VISIBLE_PREF.format(key=key), True))

    def update_shelf_visibility(self, key: str, visible: bool) -> None:
        self._set_pref(VISIBLE_PREF.format(key=key), bool(visible))

    def get_selected_list_url(self) -> Optional[str]:
        return self._get_pref(SELECTED_LIST_PREF)

    def set_selected_list_url(self, url: Optional[str]) -> None:
        self._set_pref(SELECTED_LIST_PREF, url)

    # Visual adjustments

    def get_visual_adjustment(self, book_id: str) -> Optional[Dict[str, Any]]:
        with _cache_session() as session:
            row = session.query(VisualAdjustment).filter(VisualAdjustment.book_id == book_id).first()
            return dict(row.settings or {}) if row else None

    def save_visual_adjustment(self, book_id: str, settings: Dict[str, Any]) -> None:
        with _cache_session() as session:
            row = session.query(VisualAdjustment).filter(VisualAdjustment.book_id == book_id).first()
            if row is None:
                row = VisualAdjustment(book_id=book_id)
                session.add(row)
            row.settings = dict(settings)

    def cleanup_orphans(self, valid_book_ids: Set[str]) -> int:
        """
        Delete visual adjustments for books no longer on any shelf.

        Returns:
            Number of records removed
        """
        with _cache_session() as session:
            orphans = [
                row for row in session.query(VisualAdjustment).all()
                if row.book_id not in valid_book_ids
            ]
            for row in orphans:
                session.delete(row)
            return len(orphans)
