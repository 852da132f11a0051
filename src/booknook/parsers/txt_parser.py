"""Plain text parser."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from booknook.library.models import BookContent, BookMetadata, ParsedChapter
from booknook.utils.text import decode_text, detect_language

from .base import BaseParser

HEADER_SCAN_LINES = 10
MAX_TITLE_LENGTH = 100
DEFAULT_AUTHOR = "Unknown"

_AUTHOR_MARKERS = ("作者", "著者", "저자", "author")
_AUTHOR_PREFIX = re.compile(
    r"^\s*(?:written\s+by|author|作者|著者|저자)\s*[:：]?\s*", re.IGNORECASE
)

_CN_NUMERALS = "一二三四五六七八九十百千零〇两"


@dataclass(frozen=True)
class HeadingMatcher:
    """One chapter-heading convention. ``match`` returns the title or None."""

    name: str
    pattern: re.Pattern[str]

    def match(self, line: str) -> Optional[str]:
        m = self.pattern.match(line)
        if m is None:
            return None
        title = line[m.end():].strip(" \t:：.-—")
        return title or line


DEFAULT_HEADING_MATCHERS: tuple[HeadingMatcher, ...] = (
    HeadingMatcher("cn-chapter", re.compile(rf"^第[{_CN_NUMERALS}\d]+章")),
    HeadingMatcher("en-chapter", re.compile(r"^Chapter\s+\d+", re.IGNORECASE)),
    HeadingMatcher("cn-section", re.compile(rf"^第[{_CN_NUMERALS}\d]+节")),
    HeadingMatcher("numeric-dot", re.compile(r"^\d+\.(?!\d)")),
    HeadingMatcher("cn-enumerated", re.compile(rf"^[{_CN_NUMERALS}]+、")),
)


def match_heading(
    line: str, matchers: Sequence[HeadingMatcher] = DEFAULT_HEADING_MATCHERS
) -> Optional[str]:
    """First matching convention wins."""
    for matcher in matchers:
        title = matcher.match(line)
        if title is not None:
            return title
    return None


def segment_chapters(
    text: str, matchers: Sequence[HeadingMatcher] = DEFAULT_HEADING_MATCHERS
) -> list[ParsedChapter]:
    chapters: list[ParsedChapter] = []
    current_title: Optional[str] = None
    body: list[str] = []

    def _close(title: str) -> None:
        chapters.append(
            ParsedChapter(
                number=len(chapters) + 1, title=title, content="\n".join(body).strip()
            )
        )

    for line in text.splitlines():
        stripped = line.strip()
        title = match_heading(stripped, matchers) if stripped else None
        if title is None:
            body.append(line)
            continue

        # text ahead of the first heading is front matter, not a chapter
        if current_title is not None:
            _close(current_title)
        current_title = title
        body = []

    if current_title is not None:
        _close(current_title)
    elif not chapters:
        chapters.append(ParsedChapter(number=1, title="Body", content=text.strip()))
    return chapters


def analyze_metadata(text: str, fallback_title: str) -> tuple[str, list[str]]:
    """Title and author heuristics over the first non-empty lines."""
    lines = [ln.strip() for ln in text.splitlines() if ln.strip()][:HEADER_SCAN_LINES]

    title = fallback_title
    authors = [DEFAULT_AUTHOR]
    for index, line in enumerate(lines):
        if index == 0 and len(line) < MAX_TITLE_LENGTH:
            title = line
            continue
        if any(marker in line.lower() for marker in _AUTHOR_MARKERS):
            author = _AUTHOR_PREFIX.sub("", line).strip()
            if author:
                authors = [author]
    return title, authors


class TxtParser(BaseParser):
    FORMAT = "txt"
    SUPPORTED_EXTENSIONS = (".txt", ".text")

    def __init__(
        self,
        fallback_language: str = "zh-Hans",
        legacy_encoding: str = "gb18030",
        heading_matchers: Sequence[HeadingMatcher] = DEFAULT_HEADING_MATCHERS,
    ) -> None:
        super().__init__(fallback_language, legacy_encoding)
        self.heading_matchers = tuple(heading_matchers)

    def parse(self, file_path: Path) -> BookContent:
        text, _ = decode_text(file_path.read_bytes(), self.legacy_encoding)
        title, authors = analyze_metadata(text, file_path.stem)

        meta = BookMetadata(
            title=title,
            authors=authors,
            language=detect_language(text),
            format=self.FORMAT,
        )
        return BookContent(
            metadata=meta, chapters=segment_chapters(text, self.heading_matchers)
        )
