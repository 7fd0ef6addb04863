from datetime import datetime, timedelta, timezone

from shelfsync.sync.models import (
    REMOVE_FROM_ALL_SHELVES,
    Book,
    Loaded,
    Shelf,
    ShelfSortOrder,
    move_book,
    remove_book,
    replace_shelf,
    shelf_config,
    shelf_membership_conflicts,
    sortable_title,
)
from conftest import make_book, make_shelf


def test_needs_redirect_check_for_placeholder_records():
    assert Book(edition_id="E", work_id="W1", title="").needs_redirect_check
    assert Book(edition_id="E", work_id="W1", title="Unknown Title").needs_redirect_check
    assert not Book(edition_id="E", work_id="", title="").needs_redirect_check
    assert not Book(edition_id="E", work_id="W1", title="", authors=("A",)).needs_redirect_check
    assert not Book(edition_id="E", work_id="W1", title="", cover_image_id=5).needs_redirect_check
    assert not make_book("W1").needs_redirect_check


def test_sortable_title_moves_leading_article():
    assert sortable_title("The Great Gatsby") == "great gatsby, the"
    assert sortable_title("An Instance") == "instance, an"
    assert sortable_title("Theory") == "theory"


def test_sorted_books_by_title_ignores_articles():
    shelf = make_shelf("s", [
        make_book("W1", "The Zebra"),
        make_book("W2", "Apple"),
        make_book("W3", "A Mango"),
    ])
    assert [b.work_id for b in shelf.sorted_books()] == ["W2", "W3", "W1"]


def test_sorted_books_descending_and_missing_dates_last():
    early = datetime(2020, 1, 1, tzinfo=timezone.utc)
    late = datetime(2021, 1, 1, tzinfo=timezone.utc)
    books = [
        make_book("W1", added_date=late),
        make_book("W2"),
        make_book("W3", added_date=early),
    ]
    ascending = make_shelf("s", books, sort_order=ShelfSortOrder.DATE_ADDED)
    assert [b.work_id for b in ascending.sorted_books()] == ["W3", "W1", "W2"]

    descending = make_shelf("s", books, sort_order=ShelfSortOrder.DATE_ADDED, sort_ascending=False)
    assert [b.work_id for b in descending.sorted_books()] == ["W2", "W1", "W3"]


def test_publish_dates_compare_numerically():
    shelf = make_shelf("s", [
        make_book("W1", publish_date="1999"),
        make_book("W2", publish_date="200"),
    ], sort_order=ShelfSortOrder.DATE_PUBLISHED)
    assert [b.work_id for b in shelf.sorted_books()] == ["W2", "W1"]


def test_total_defaults_to_book_count():
    assert make_shelf("s", [make_book("W1"), make_book("W2")]).total_count == 2
    assert make_shelf("s", [make_book("W1")], total_count=40).total_count == 40


def test_is_stale():
    now = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
    fresh = make_shelf("s", last_synced_at=now - timedelta(hours=1))
    old = make_shelf("s", last_synced_at=now - timedelta(hours=7))
    never = make_shelf("s", last_synced_at=None)

    assert not fresh.is_stale(timedelta(hours=6), now)
    assert old.is_stale(timedelta(hours=6), now)
    assert never.is_stale(timedelta(hours=6), now)


def test_remove_book_decrements_total():
    shelves = (
        make_shelf("a", [make_book("W1"), make_book("W2")], total_count=10),
        make_shelf("b", [make_book("W1")]),
    )
    updated = remove_book(shelves, "W1", "a")

    assert [b.work_id for b in updated[0].books] == ["W2"]
    assert updated[0].total_count == 9
    assert updated[1] is shelves[1]


def test_remove_book_missing_work_is_noop():
    shelves = (make_shelf("a", [make_book("W1")]),)
    assert remove_book(shelves, "W9")[0] is shelves[0]


def test_move_book_between_shelves():
    shelves = (
        make_shelf("a", [make_book("W1"), make_book("W2")]),
        make_shelf("b", [make_book("W3")]),
    )
    updated = move_book(shelves, make_book("W1"), "b")

    assert [b.work_id for b in updated[0].books] == ["W2"]
    assert updated[0].total_count == 1
    assert [b.work_id for b in updated[1].books] == ["W1", "W3"]
    assert updated[1].total_count == 2
    assert shelf_membership_conflicts(updated) == {}


def test_move_book_replaces_edition_without_changing_total():
    shelves = (make_shelf("a", [make_book("W1", edition_id="OLD")], total_count=5),)
    updated = move_book(shelves, make_book("W1", edition_id="NEW"), "a")

    assert [b.edition_id for b in updated[0].books] == ["NEW"]
    assert updated[0].total_count == 5


def test_move_book_to_sentinel_removes_everywhere():
    shelves = (
        make_shelf("a", [make_book("W1")]),
        make_shelf("b", [make_book("W1"), make_book("W2")]),
    )
    updated = move_book(shelves, make_book("W1"), REMOVE_FROM_ALL_SHELVES)

    assert all(shelf.find_book("W1") is None for shelf in updated)
    assert [s.total_count for s in updated] == [0, 1]


def test_replace_shelf_touches_only_matching_key():
    a = make_shelf("a", [make_book("W1")])
    b = make_shelf("b")
    new_a = make_shelf("a", [make_book("W2")])

    assert replace_shelf((a, b), new_a) == (new_a, b)


def test_membership_conflicts():
    shelves = (
        make_shelf("a", [make_book("W1")]),
        make_shelf("b", [make_book("W1"), make_book("W2")]),
    )
    assert shelf_membership_conflicts(shelves) == {"W1": ["a", "b"]}


def test_shelf_round_trips_through_dict():
    shelf = make_shelf("want-to-read", [make_book("W1", cover_image_id=7)], total_count=3)
    restored = Shelf.from_dict(shelf.to_dict())
    assert restored == shelf


def test_unknown_shelf_config_falls_back():
    assert shelf_config("want-to-read").remote_id == 1
    assert shelf_config("custom").name == "custom"


def test_loaded_evolve_coerces_tuples():
    state = Loaded(shelves=())
    evolved = state.evolve(shelves=[make_shelf("a")], is_refreshing=True)
    assert isinstance(evolved.shelves, tuple)
    assert evolved.is_refreshing
    assert state.is_refreshing is False


def test_naive_dates_from_dict_are_utc():
    book = Book.from_dict({"work_id": "W1", "title": "T", "added_date": "2024-02-01T00:00:00"})
    assert book.added_date == datetime(2024, 2, 1, tzinfo=timezone.utc)


def test_date_sort_mixes_parsed_and_server_dates():
    shelf = make_shelf("s", [
        make_book("W1", added_date=datetime(2024, 3, 1, tzinfo=timezone.utc)),
        Book.from_dict({"work_id": "W2", "title": "T", "added_date": "2024-02-01T00:00:00"}),
    ], sort_order=ShelfSortOrder.DATE_ADDED)
    assert [b.work_id for b in shelf.sorted_books()] == ["W2", "W1"]
