"""Tests for database operations."""

from __future__ import annotations

import time

import pytest

from booknook.errors import EntityNotFoundError, PersistenceError
from booknook.library.database import DELETION_ORDER, Database
from booknook.library.models import (
    Annotation,
    Book,
    BookStatus,
    Chapter,
    Highlight,
    LibraryItem,
    ReadingProgress,
    new_id,
)

from conftest import add_book


def _make_item(db: Database, book: Book, user_id: str = "reader") -> LibraryItem:
    item = LibraryItem(id=new_id(), book_id=book.id, user_id=user_id)
    db.save_library_item(item)
    return item


def _make_progress(db: Database, item: LibraryItem, seconds: int = 0) -> ReadingProgress:
    progress = ReadingProgress(
        id=new_id(), library_item_id=item.id, total_reading_time=seconds
    )
    db.save_progress(progress)
    return progress


class TestBooksCRUD:
    def test_add_and_get(self, db: Database):
        book, chapters = add_book(db, title="Dune", authors=["Frank Herbert"])
        fetched = db.get_book(book.id)
        assert fetched is not None
        assert fetched.title == "Dune"
        assert fetched.authors == ["Frank Herbert"]
        assert [c.number for c in db.list_chapters(book.id)] == [1, 2]

    def test_get_nonexistent(self, db: Database):
        assert db.get_book("nonexistent") is None

    def test_update_missing_book(self, db: Database):
        with pytest.raises(EntityNotFoundError):
            db.update_book(Book(id="missing", title="x"))

    def test_file_path_requires_checksum(self, db: Database):
        book = Book(id=new_id(), title="Half", file_path="/tmp/a.epub")
        with pytest.raises(PersistenceError):
            db.add_book(book)
        assert db.count("books") == 0

    def test_add_book_is_atomic(self, db: Database):
        book = Book(id=new_id(), title="Dup chapters")
        chapters = [
            Chapter(id=new_id(), book_id=book.id, number=1, title="a"),
            Chapter(id=new_id(), book_id=book.id, number=1, title="b"),
        ]
        with pytest.raises(PersistenceError):
            db.add_book(book, chapters)
        assert db.get_book(book.id) is None
        assert db.count("chapters") == 0

    def test_find_by_checksum(self, db: Database):
        for _ in range(2):
            db.add_book(
                Book(id=new_id(), title="Same", file_path="/x.txt", file_checksum="abc")
            )
        assert len(db.find_books_by_checksum("abc")) == 2
        assert db.find_books_by_checksum("zzz") == []

    def test_search_title_and_author(self, db: Database):
        add_book(db, title="Dune", authors=["Frank Herbert"])
        add_book(db, title="Emma", authors=["Jane Austen"])
        assert [b.title for b in db.search_books("Austen")] == ["Emma"]
        assert [b.title for b in db.search_books("dun")] == ["Dune"]

    def test_list_books_ordered(self, db: Database):
        add_book(db, title="B")
        add_book(db, title="A")
        assert [b.title for b in db.list_books("title ASC")] == ["A", "B"]
        # unknown orderings fall back to the default
        assert len(db.list_books("title; DROP TABLE books")) == 2

    def test_books_with_status(self, db: Database):
        reading, _ = add_book(db, title="Reading")
        add_book(db, title="Unread")
        item = _make_item(db, reading)
        item.status = BookStatus.READING
        db.save_library_item(item)
        assert [b.title for b in db.books_with_status(BookStatus.READING, "reader")] == [
            "Reading"
        ]
        assert db.books_with_status(BookStatus.READING, "someone-else") == []

    def test_chapter_by_number(self, db: Database):
        book, chapters = add_book(db, chapters=3)
        assert db.get_chapter_by_number(book.id, 3).id == chapters[2].id
        assert db.get_chapter_by_number(book.id, 4) is None


class TestTransactions:
    def test_rollback_on_error(self, db: Database):
        with pytest.raises(RuntimeError):
            with db.transaction():
                add_book(db, title="Doomed")
                raise RuntimeError("boom")
        assert db.count("books") == 0

    def test_nested_commit(self, db: Database):
        with db.transaction():
            with db.transaction():
                add_book(db)
        assert db.count("books") == 1


class TestReadingState:
    def test_one_item_per_book_and_user(self, db: Database):
        book, _ = add_book(db)
        _make_item(db, book)
        with pytest.raises(PersistenceError):
            _make_item(db, book)
        _make_item(db, book, user_id="other")
        assert db.count("library_items") == 2

    def test_item_round_trip(self, db: Database):
        book, _ = add_book(db)
        item = _make_item(db, book)
        item.tags = {"sci-fi", "classic"}
        item.is_favorite = True
        db.save_library_item(item)
        fetched = db.get_library_item_for_book(book.id, "reader")
        assert fetched.tags == {"sci-fi", "classic"}
        assert fetched.is_favorite is True
        assert fetched.status is BookStatus.WANT_TO_READ

    def test_reading_time_never_decreases(self, db: Database):
        book, _ = add_book(db)
        progress = _make_progress(db, _make_item(db, book), seconds=300)
        progress.total_reading_time = 100
        db.save_progress(progress)
        assert db.get_progress(progress.id).total_reading_time == 300

    def test_highlight_range_checked(self, db: Database):
        _, chapters = add_book(db)
        hl = Highlight(
            id=new_id(),
            chapter_id=chapters[0].id,
            user_id="reader",
            text="x",
            range_start=5,
            range_end=5,
        )
        with pytest.raises(PersistenceError):
            db.save_highlight(hl)

    def test_list_highlights_by_book(self, db: Database):
        book_a, ch_a = add_book(db)
        _, ch_b = add_book(db)
        for chapter in (ch_a[0], ch_b[0]):
            db.save_highlight(
                Highlight(
                    id=new_id(),
                    chapter_id=chapter.id,
                    user_id="reader",
                    text="x",
                    range_start=0,
                    range_end=1,
                )
            )
        assert len(db.list_highlights()) == 2
        assert [h.chapter_id for h in db.list_highlights(book_a.id)] == [ch_a[0].id]


class TestSyncBookkeeping:
    def test_pending_and_mark_synced(self, db: Database):
        book, _ = add_book(db)
        item = _make_item(db, book)
        assert db.pending_ids("library_items") == [item.id]

        assert db.mark_synced("library_items", item.id, "remote-1", item.updated_at)
        assert db.pending_ids("library_items") == []
        assert db.find_id_by_remote_id("library_items", "remote-1") == item.id

    def test_mark_synced_skips_modified_record(self, db: Database):
        book, _ = add_book(db)
        item = _make_item(db, book)
        pushed_at = item.updated_at
        item.updated_at = pushed_at + 10
        db.save_library_item(item)
        assert not db.mark_synced("library_items", item.id, "remote-1", pushed_at)
        assert db.pending_ids("library_items") == [item.id]

    def test_mark_pending(self, db: Database):
        book, _ = add_book(db)
        item = _make_item(db, book)
        db.mark_synced("library_items", item.id, "remote-1", item.updated_at)
        db.mark_pending("library_items", item.id)
        assert db.pending_ids("library_items") == [item.id]
        assert db.find_id_by_remote_id("library_items", "remote-1") is None

    def test_unknown_table_rejected(self, db: Database):
        with pytest.raises(ValueError):
            db.pending_ids("books")

    def test_remote_ids_for_book(self, db: Database):
        book, chapters = add_book(db)
        item = _make_item(db, book)
        db.mark_synced("library_items", item.id, "r-item", item.updated_at)
        ann = Annotation(
            id=new_id(),
            chapter_id=chapters[0].id,
            user_id="reader",
            content="note",
            range_start=0,
            range_end=3,
            remote_record_id="r-ann",
        )
        db.save_annotation(ann)
        ids = db.remote_ids_for_book(book.id)
        assert ids["library_items"] == ["r-item"]
        assert ids["annotations"] == ["r-ann"]
        assert ids["highlights"] == []
        assert ids["reading_progress"] == []


class TestDeletion:
    def _populate(self, db: Database) -> Book:
        book, chapters = add_book(db)
        item = _make_item(db, book)
        _make_progress(db, item)
        db.save_highlight(
            Highlight(
                id=new_id(),
                chapter_id=chapters[0].id,
                user_id="reader",
                text="x",
                range_start=0,
                range_end=1,
            )
        )
        db.save_annotation(
            Annotation(
                id=new_id(),
                chapter_id=chapters[1].id,
                user_id="reader",
                content="y",
                range_start=0,
                range_end=1,
            )
        )
        return book

    def test_delete_all(self, db: Database):
        self._populate(db)
        self._populate(db)
        db.delete_all()
        assert all(db.count(t) == 0 for t in DELETION_ORDER)

    def test_delete_book_cascade(self, db: Database):
        doomed = self._populate(db)
        kept = self._populate(db)
        db.delete_book(doomed.id)
        assert db.get_book(doomed.id) is None
        assert db.get_book(kept.id) is not None
        assert db.count("chapters") == 2
        assert db.count("library_items") == 1
        assert db.count("reading_progress") == 1
        assert db.count("highlights") == 1
        assert db.count("annotations") == 1

    def test_delete_reading_data(self, db: Database):
        book = self._populate(db)
        db.delete_reading_data(book.id)
        assert db.count("reading_progress") == 0
        assert db.count("highlights") == 0
        assert db.count("annotations") == 0
        assert db.count("library_items") == 1
        assert db.get_book(book.id) is not None

    def test_schema_timestamps(self, db: Database):
        before = time.time()
        book, _ = add_book(db)
        assert db.get_book(book.id).created_at >= before - 1
