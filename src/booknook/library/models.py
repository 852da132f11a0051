"""Data models for the book library."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


def new_id() -> str:
    return str(uuid.uuid4())


class BookStatus(str, Enum):
    WANT_TO_READ = "want_to_read"
    READING = "reading"
    FINISHED = "finished"


@dataclass
class Book:
    id: str
    title: str
    authors: list[str] = field(default_factory=lambda: ["Unknown"])
    language: str = "en"
    source: str = "local"
    file_path: Optional[str] = None
    file_format: str = ""  # epub, txt
    file_checksum: Optional[str] = None  # SHA256 of file content
    file_size: int = 0
    cover_image_path: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def author(self) -> str:
        return ", ".join(self.authors)


@dataclass
class Chapter:
    id: str
    book_id: str
    number: int  # 1-based
    title: str
    content: str = ""


@dataclass
class LibraryItem:
    id: str
    book_id: str
    user_id: str
    status: BookStatus = BookStatus.WANT_TO_READ
    added_at: float = field(default_factory=time.time)
    last_read_at: Optional[float] = None
    is_favorite: bool = False
    tags: set[str] = field(default_factory=set)
    updated_at: float = field(default_factory=time.time)
    remote_record_id: Optional[str] = None


@dataclass
class ReadingProgress:
    id: str
    library_item_id: str
    current_position: float = 0.0  # 0.0 - 1.0
    current_chapter_id: Optional[str] = None
    total_reading_time: int = 0  # seconds, never decreases
    last_read_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    remote_record_id: Optional[str] = None


@dataclass
class Highlight:
    id: str
    chapter_id: str
    user_id: str
    text: str
    range_start: int
    range_end: int
    color: str = "yellow"
    note: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    remote_record_id: Optional[str] = None


@dataclass
class Annotation:
    id: str
    chapter_id: str
    user_id: str
    content: str
    range_start: int
    range_end: int
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    remote_record_id: Optional[str] = None


@dataclass
class ParsedChapter:
    """Chapter produced by a parser, before it is bound to a book."""

    number: int
    title: str
    content: str = ""


@dataclass
class BookMetadata:
    title: str
    authors: list[str]
    language: str
    format: str


@dataclass
class BookContent:
    """Full parsed book structure."""

    metadata: BookMetadata
    chapters: list[ParsedChapter] = field(default_factory=list)
