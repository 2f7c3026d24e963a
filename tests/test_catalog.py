import pytest

from circulation import database
from circulation.errors import TitleNotFound, Unavailable, ValidationError
from circulation.models import TitleStatus


def test_add_and_list_titles(lib):
    assert lib.catalog.list_titles() == []

    title = lib.catalog.add_title("Ulysses", "James Joyce", 2, isbn="9780199535675")

    assert title.available_copies == 2
    assert title.total_copies == 2
    assert [t.title for t in lib.catalog.list_titles()] == ["Ulysses"]


def test_add_title_requires_title_and_author(lib):
    with pytest.raises(ValidationError):
        lib.catalog.add_title("", "Someone", 1)
    with pytest.raises(ValidationError):
        lib.catalog.add_title("Something", "  ", 1)


def test_add_title_rejects_negative_copies(lib):
    with pytest.raises(ValidationError):
        lib.catalog.add_title("Dune", "Frank Herbert", -1)


def test_search_titles(lib):
    lib.catalog.add_title("Sapiens", "Yuval Noah Harari", 1)
    lib.catalog.add_title("Dune", "Frank Herbert", 1)

    assert [t.title for t in lib.catalog.search_titles("harari")] == ["Sapiens"]
    assert lib.catalog.search_titles("nothing-matches") == []


def test_reserve_and_release_copy(lib):
    title = lib.catalog.add_title("Dune", "Frank Herbert", 1)

    with database.transaction(lib.db_file) as conn:
        lib.catalog.reserve_copy(conn, title.id)
    assert lib.catalog.get_title(title.id).available_copies == 0

    with pytest.raises(Unavailable):
        with database.transaction(lib.db_file) as conn:
            lib.catalog.reserve_copy(conn, title.id)

    with database.transaction(lib.db_file) as conn:
        lib.catalog.release_copy(conn, title.id)
    assert lib.catalog.get_title(title.id).available_copies == 1


def test_release_never_exceeds_total(lib):
    title = lib.catalog.add_title("Dune", "Frank Herbert", 1)

    with database.transaction(lib.db_file) as conn:
        lib.catalog.release_copy(conn, title.id)

    assert lib.catalog.get_title(title.id).available_copies == 1


def test_reserve_unknown_title(lib):
    with pytest.raises(TitleNotFound):
        with database.transaction(lib.db_file) as conn:
            lib.catalog.reserve_copy(conn, 999)


def test_update_copies_keeps_loaned_copies(lib, subscribed_member, now):
    title = lib.catalog.add_title("Dune", "Frank Herbert", 2)
    lib.loans.issue_loan(subscribed_member.id, title.id, now)

    updated = lib.catalog.update_copies(title.id, 5)

    assert updated.total_copies == 5
    assert updated.available_copies == 4

    with pytest.raises(ValidationError, match="on loan"):
        lib.catalog.update_copies(title.id, 0)


def test_archived_title_cannot_be_issued(lib, subscribed_member, now):
    title = lib.catalog.add_title("Dune", "Frank Herbert", 1)

    archived = lib.catalog.archive_title(title.id)

    assert archived.status is TitleStatus.ARCHIVED
    assert lib.catalog.list_titles() == []
    assert len(lib.catalog.list_titles(include_archived=True)) == 1
    with pytest.raises(TitleNotFound):
        lib.loans.issue_loan(subscribed_member.id, title.id, now)


def test_catalog_writes_are_audited(lib):
    title = lib.catalog.add_title("Dune", "Frank Herbert", 1, performed_by=None)

    entries = lib.audit_log.recent(action="BOOK_CREATED")

    assert entries[0]["entity_id"] == title.id
    assert entries[0]["details"]["total_copies"] == 1
