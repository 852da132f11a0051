"""Shared fixtures for tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

from booknook.config import AppConfig
from booknook.library.database import Database
from booknook.library.models import Book, Chapter, new_id
from booknook.library.service import BookService


@pytest.fixture
def db(tmp_path: Path) -> Database:
    db_path = tmp_path / "test.db"
    database = Database(db_path)
    yield database
    database.close()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        data_dir=tmp_path / "data",
        config_dir=tmp_path / "config",
        cache_dir=tmp_path / "cache",
    )


@pytest.fixture
def service(db: Database) -> BookService:
    return BookService(db, user_id="reader")


def add_book(
    db: Database,
    title: str = "Test Book",
    authors: Sequence[str] = ("Author",),
    chapters: int = 2,
    book_id: Optional[str] = None,
) -> tuple[Book, list[Chapter]]:
    """Insert a book without a backing file."""
    book = Book(id=book_id or new_id(), title=title, authors=list(authors))
    chs = [
        Chapter(
            id=new_id(),
            book_id=book.id,
            number=n,
            title=f"Chapter {n}",
            content=f"Content of chapter {n}.",
        )
        for n in range(1, chapters + 1)
    ]
    db.add_book(book, chs)
    return book, chs


@pytest.fixture
def make_epub() -> Callable[..., Path]:
    """Build a small EPUB with ebooklib."""

    def _make(
        path: Path,
        title: str = "Test Book",
        authors: Sequence[str] = ("Test Author",),
        language: str = "en",
        cover: Optional[bytes] = None,
    ) -> Path:
        from ebooklib import epub

        book = epub.EpubBook()
        book.set_identifier("test123")
        book.set_title(title)
        book.set_language(language)
        for author in authors:
            book.add_author(author)
        if cover is not None:
            book.set_cover("cover.png", cover, create_page=False)

        c1 = epub.EpubHtml(title="Chapter 1", file_name="ch1.xhtml", lang=language)
        c1.content = (
            "<html><body><h1>Chapter 1</h1>"
            "<p>First paragraph.</p><p>Second paragraph.</p></body></html>"
        )
        book.add_item(c1)

        c2 = epub.EpubHtml(title="Chapter 2", file_name="ch2.xhtml", lang=language)
        c2.content = (
            "<html><body><h1>Chapter 2</h1><p>Chapter two content.</p></body></html>"
        )
        book.add_item(c2)

        book.toc = [
            epub.Link("ch1.xhtml", "Chapter 1", "ch1"),
            epub.Link("ch2.xhtml", "Chapter 2", "ch2"),
        ]
        book.add_item(epub.EpubNcx())
        book.add_item(epub.EpubNav())
        book.spine = [c1, c2]

        epub.write_epub(str(path), book)
        return path

    return _make
