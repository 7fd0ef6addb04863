from unittest.mock import MagicMock

import pytest

from conftest import make_book, make_shelf
from shelfsync.api.base import NetworkError, ServerError, UnauthorizedError, ValidationError
from shelfsync.db.cache import ShelfCache
from shelfsync.db.database import close_db, init_db
from shelfsync.sync.models import REMOVE_FROM_ALL_SHELVES, Book, BookDisplayItem, ShelfSortOrder, WorkResolution
from shelfsync.sync.repository import (
    OpenLibraryListRepository,
    OpenLibraryShelfRepository,
    OpenLibraryWorkResolver,
    PreferenceStore,
)


@pytest.fixture
def cache():
    init_db("sqlite://")
    yield ShelfCache()
    close_db()


@pytest.fixture
def client():
    client = MagicMock()
    client.fetch_shelves.side_effect = lambda keys: [make_shelf(k, [make_book(f"{k}-W")]) for k in keys]
    client.fetch_shelf.side_effect = lambda key: make_shelf(key, [make_book("FRESH")])
    return client


@pytest.fixture
def repository(client, cache):
    return OpenLibraryShelfRepository(client, cache)


async def test_first_load_fetches_and_caches(repository, client, cache):
    shelves = await repository.get_shelves()

    assert [s.key for s in shelves] == ["want-to-read", "currently-reading", "already-read"]
    assert client.fetch_shelves.call_count == 1
    assert [s.key for s in cache.get_cached_shelves()] == [s.key for s in shelves]

    await repository.get_shelves()
    assert client.fetch_shelves.call_count == 1


async def test_preferences_applied_to_fetched_shelves(repository, cache):
    cache.update_shelf_visibility("currently-reading", False)
    cache.update_shelf_sort("want-to-read", ShelfSortOrder.TITLE, False)

    shelves = {s.key: s for s in await repository.get_shelves(force_refresh=True)}

    assert shelves["currently-reading"].is_visible is False
    assert shelves["want-to-read"].sort_order == ShelfSortOrder.TITLE
    assert shelves["want-to-read"].sort_ascending is False


async def test_forced_refresh_falls_back_to_cache(repository, client, cache):
    cache.cache_shelves([make_shelf("want-to-read", [make_book("OLD")])])
    client.fetch_shelves.side_effect = NetworkError("offline")

    shelves = await repository.get_shelves(force_refresh=True)

    assert [b.work_id for b in shelves[0].books] == ["OLD"]


async def test_forced_refresh_auth_failure_is_not_masked(repository, client, cache):
    cache.cache_shelves([make_shelf("want-to-read")])
    client.fetch_shelves.side_effect = UnauthorizedError("expired", status_code=401)

    with pytest.raises(UnauthorizedError):
        await repository.get_shelves(force_refresh=True)


async def test_forced_refresh_without_cache_raises(repository, client):
    client.fetch_shelves.side_effect = NetworkError("offline")
    with pytest.raises(NetworkError):
        await repository.get_shelves(force_refresh=True)


async def test_unexpected_errors_become_server_errors(repository, client):
    client.fetch_shelves.side_effect = KeyError("numFound")
    with pytest.raises(ServerError):
        await repository.get_shelves(force_refresh=True)


async def test_get_shelf_forced_updates_cache(repository, cache):
    cache.cache_shelves([make_shelf("a", [make_book("OLD")]), make_shelf("b")])

    cached = await repository.get_shelf("a")
    fresh = await repository.get_shelf("a", force_refresh=True)

    assert [b.work_id for b in cached.books] == ["OLD"]
    assert [b.work_id for b in fresh.books] == ["FRESH"]
    assert [b.work_id for b in cache.get_cached_shelf("a").books] == ["FRESH"]


async def test_move_updates_remote_then_cache(repository, client, cache):
    cache.cache_shelves([make_shelf("a", [make_book("W1")]), make_shelf("b")])

    await repository.move_book_to_shelf(make_book("W1"), "b")

    client.set_bookshelf.assert_called_once_with("W1", "W1-E", "b")
    assert cache.get_cached_shelf("a").books == ()
    assert [b.work_id for b in cache.get_cached_shelf("b").books] == ["W1"]


async def test_move_requires_work_id(repository, client):
    with pytest.raises(ValidationError):
        await repository.move_book_to_shelf(make_book("", edition_id="E1"), "b")
    client.set_bookshelf.assert_not_called()


async def test_remote_failure_leaves_cache(repository, client, cache):
    cache.cache_shelves([make_shelf("a", [make_book("W1")])])
    client.set_bookshelf.side_effect = NetworkError("offline")

    with pytest.raises(NetworkError):
        await repository.remove_book_from_shelf(make_book("W1"), "a")
    assert [b.work_id for b in cache.get_cached_shelf("a").books] == ["W1"]


async def test_remove_uses_sentinel(repository, client, cache):
    cache.cache_shelves([make_shelf("a", [make_book("W1")])])

    await repository.remove_book_from_shelf(make_book("W1"), "a")

    client.set_bookshelf.assert_called_once_with("W1", "W1-E", REMOVE_FROM_ALL_SHELVES)
    assert cache.get_cached_shelf("a").books == ()


async def test_refresh_book_merges_edition_and_updates_cache(repository, client, cache):
    cache.cache_shelves([make_shelf("a", [make_book("W1"), make_book("W2")])])
    client.fetch_edition.return_value = {
        "title": "Fresh", "authors": [{"key": "/authors/A1"}], "covers": [99],
    }
    client.fetch_author_names.return_value = ["Fresh Author"]

    updated = await repository.refresh_book(make_book("W1"), "a")

    client.fetch_edition.assert_called_once_with("W1-E")
    client.fetch_author_names.assert_called_once_with(["/authors/A1"])
    assert updated.title == "Fresh"
    assert updated.authors == ("Fresh Author",)
    assert updated.cover_image_id == 99
    cached = cache.get_cached_shelf("a")
    assert [b.title for b in cached.books] == ["Fresh", "Title W2"]


async def test_refresh_book_uncached_shelf_still_returns_book(repository, client):
    client.fetch_edition.return_value = {"title": "Fresh"}
    client.fetch_author_names.return_value = []

    updated = await repository.refresh_book(make_book("W1"), "missing")

    assert updated.title == "Fresh"
    assert updated.authors == ("Some Author",)


async def test_refresh_book_requires_edition_id(repository, client):
    with pytest.raises(ValidationError):
        await repository.refresh_book(Book(edition_id="", work_id="W1", title="T"), "a")
    client.fetch_edition.assert_not_called()


async def test_update_sort_persists(repository, cache):
    cache.cache_shelves([make_shelf("a", [make_book("W2", "B"), make_book("W1", "A")])])

    shelf = await repository.update_shelf_sort("a", ShelfSortOrder.TITLE, True)

    assert [b.work_id for b in shelf.books] == ["W1", "W2"]
    assert cache.get_shelf_sort("a") == (ShelfSortOrder.TITLE, True)


async def test_loans_are_cached(repository, client):
    client.fetch_loans.return_value = {"OL1M": {"expiry": "2024-05-01 10:00:00"}}

    await repository.get_user_loans()
    await repository.get_user_loans()
    assert client.fetch_loans.call_count == 1

    await repository.get_user_loans(force_refresh=True)
    assert client.fetch_loans.call_count == 2

    await repository.clear_cache()
    await repository.get_user_loans()
    assert client.fetch_loans.call_count == 3


async def test_list_items_are_cached_until_changed(client):
    client.resolve_seeds.return_value = [BookDisplayItem(make_book("W1"))]
    lists = OpenLibraryListRepository(client)

    await lists.get_list_seeds("/l/1")
    await lists.get_list_seeds("/l/1")
    assert client.fetch_list_seeds.call_count == 1

    await lists.add_seed("/l/1", make_book("W2", edition_id="OL2M"))
    client.update_list_seeds.assert_called_once_with("/l/1", add=["/books/OL2M"])
    await lists.get_list_seeds("/l/1")
    assert client.fetch_list_seeds.call_count == 2


async def test_work_resolver_fills_author_names(client):
    client.resolve_work_redirect.return_value = WorkResolution(
        work={"title": "T", "authors": [{"author": {"key": "/authors/OL1A"}}]},
        new_work_id="W9b",
        hops=1,
    )
    client.fetch_author_names.return_value = ["Ann"]

    resolution = await OpenLibraryWorkResolver(client).resolve_work_redirect("W9")

    client.resolve_work_redirect.assert_called_once_with("W9", max_hops=1)
    assert resolution.work["author_names"] == ["Ann"]
    assert resolution.new_work_id == "W9b"


async def test_preference_store(cache):
    prefs = PreferenceStore(cache)
    await prefs.set_selected_list_url("/l/1")
    assert await prefs.get_selected_list_url() == "/l/1"
    assert await prefs.cleanup_orphans(set()) == 0


async def test_visual_adjustments_survive_only_for_kept_books(cache):
    prefs = PreferenceStore(cache)
    await prefs.save_visual_adjustment("W1", {"contrast": 1.5})
    await prefs.save_visual_adjustment("W2", {"contrast": 0.5})

    assert await prefs.get_visual_adjustment("W1") == {"contrast": 1.5}
    assert await prefs.cleanup_orphans({"W1"}) == 1
    assert await prefs.get_visual_adjustment("W2") is None


async def test_configured_shelf_keys_are_deduplicated_and_saved(repository, client, cache):
    keys = await repository.update_configured_shelf_keys(["already-read", "want-to-read", "already-read"])

    assert keys == ["already-read", "want-to-read"]
    assert cache.get_configured_shelf_keys() == ["already-read", "want-to-read"]
    shelves = await repository.get_shelves(force_refresh=True)
    assert [s.key for s in shelves] == ["already-read", "want-to-read"]
    client.fetch_shelves.assert_called_once_with(["already-read", "want-to-read"])


@pytest.mark.parametrize("keys", [[], ["want-to-read", "favourites"]])
async def test_invalid_shelf_keys_are_rejected(repository, cache, keys):
    with pytest.raises(ValidationError):
        await repository.update_configured_shelf_keys(keys)
    assert cache.get_configured_shelf_keys() == ["want-to-read", "currently-reading", "already-read"]


async def test_check_connection(repository, client):
    client.test_connection.return_value = False
    assert await repository.check_connection() is False
    client.test_connection.assert_called_once_with()
