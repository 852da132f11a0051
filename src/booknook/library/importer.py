"""Import pipeline: validate, stage, parse, checksum and persist a book file."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Iterable, Optional, Union

from booknook.config import AppConfig
from booknook.errors import (
    BooknookError,
    CopyError,
    FileMissingError,
    FilePermissionError,
    FileTooLargeError,
)
from booknook.events import BOOK_IMPORTED, EventBus
from booknook.parsers.base import detect_format, get_parser
from booknook.parsers.epub_parser import EpubParser
from booknook.utils.checksum import sha256_file

from .database import Database
from .models import Book, Chapter, new_id

log = logging.getLogger(__name__)


class BookImporter:
    def __init__(
        self, config: AppConfig, db: Database, events: Optional[EventBus] = None
    ) -> None:
        self._config = config
        self._db = db
        self._events = events or EventBus()

    def validate_file(self, file_path: Path) -> str:
        """Check existence, size ceiling and type. Returns the format tag."""
        if not file_path.is_file():
            raise FileMissingError(f"File not found: {file_path}")
        try:
            size = file_path.stat().st_size
        except PermissionError as e:
            raise FilePermissionError(f"Cannot read {file_path}") from e
        if size > self._config.max_import_bytes:
            limit_mb = self._config.max_import_bytes // (1024 * 1024)
            raise FileTooLargeError(f"File is larger than {limit_mb}MB: {file_path.name}")
        return detect_format(file_path)

    def find_by_checksum(self, checksum: str) -> list[Book]:
        return self._db.find_books_by_checksum(checksum)

    async def import_book(self, source: Union[str, Path]) -> Book:
        file_path = Path(source).expanduser()
        file_format = self.validate_file(file_path)

        book_id = new_id()
        staging = self._config.books_dir / book_id
        try:
            staged = staging / file_path.name
            try:
                staging.mkdir(parents=True)
                await asyncio.to_thread(shutil.copyfile, file_path, staged)
            except OSError as e:
                raise CopyError(f"Could not copy {file_path.name}: {e}") from e

            parser = get_parser(
                staged,
                fallback_language=self._config.fallback_language,
                legacy_encoding=self._config.legacy_encoding,
            )
            content = await asyncio.to_thread(parser.parse, staged)
            checksum = await asyncio.to_thread(sha256_file, staged)

            meta = content.metadata
            book = Book(
                id=book_id,
                title=meta.title,
                authors=list(meta.authors),
                language=meta.language,
                file_path=str(staged),
                file_format=file_format,
                file_checksum=checksum,
                file_size=staged.stat().st_size,
            )
            chapters = [
                Chapter(
                    id=new_id(),
                    book_id=book_id,
                    number=ch.number,
                    title=ch.title,
                    content=ch.content,
                )
                for ch in content.chapters
            ]
            self._db.add_book(book, chapters)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        log.info("Imported %s (%s, %d chapters)", book.title, book.id, len(chapters))

        if file_format == EpubParser.FORMAT:
            await self._attach_cover(book, staged)

        self._events.publish(BOOK_IMPORTED, {"book_id": book.id, "title": book.title})
        return book

    async def import_books(
        self, sources: Iterable[Union[str, Path]]
    ) -> list[Union[Book, BaseException]]:
        """Import concurrently; one failing file does not affect the others."""
        return await asyncio.gather(
            *(self.import_book(s) for s in sources), return_exceptions=True
        )

    async def _attach_cover(self, book: Book, staged: Path) -> None:
        parser = EpubParser(fallback_language=self._config.fallback_language)
        cover_dir = self._config.covers_dir / book.id
        try:
            cover = await asyncio.to_thread(parser.extract_cover, staged, cover_dir)
            if cover is not None:
                book.cover_image_path = str(cover)
                self._db.update_book(book)
        except (BooknookError, OSError) as e:
            log.warning("Cover extraction failed for %s: %s", book.id, e)
            book.cover_image_path = None
            shutil.rmtree(cover_dir, ignore_errors=True)
