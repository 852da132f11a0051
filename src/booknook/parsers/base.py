"""Base parser interface for supported ebook formats."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from booknook.errors import UnsupportedFileTypeError
from booknook.library.models import BookContent


class BaseParser(ABC):
    """Abstract base for format-specific parsers."""

    FORMAT: str = ""
    SUPPORTED_EXTENSIONS: tuple[str, ...] = ()

    def __init__(
        self, fallback_language: str = "zh-Hans", legacy_encoding: str = "gb18030"
    ) -> None:
        self.fallback_language = fallback_language
        self.legacy_encoding = legacy_encoding

    @abstractmethod
    def parse(self, file_path: Path) -> BookContent:
        """Parse a file and return structured book content."""

    @classmethod
    def can_handle(cls, file_path: Path) -> bool:
        return file_path.suffix.lower() in cls.SUPPORTED_EXTENSIONS


def _parser_classes() -> list[type[BaseParser]]:
    from booknook.parsers.epub_parser import EpubParser
    from booknook.parsers.txt_parser import TxtParser

    return [EpubParser, TxtParser]


def supported_extensions() -> tuple[str, ...]:
    supported: list[str] = []
    for p in _parser_classes():
        supported.extend(p.SUPPORTED_EXTENSIONS)
    return tuple(supported)


def detect_format(file_path: Path) -> str:
    """Return the format tag ("epub" or "txt") declared by the file name."""
    for parser_cls in _parser_classes():
        if parser_cls.can_handle(file_path):
            return parser_cls.FORMAT
    raise UnsupportedFileTypeError(
        f"Unsupported format: {file_path.suffix or '(none)'}. "
        f"Supported: {', '.join(supported_extensions())}"
    )


def get_parser(
    file_path: Path, fallback_language: str = "zh-Hans", legacy_encoding: str = "gb18030"
) -> BaseParser:
    """Return the appropriate parser for a file."""
    for parser_cls in _parser_classes():
        if parser_cls.can_handle(file_path):
            return parser_cls(
                fallback_language=fallback_language, legacy_encoding=legacy_encoding
            )
    raise UnsupportedFileTypeError(
        f"Unsupported format: {file_path.suffix or '(none)'}. "
        f"Supported: {', '.join(supported_extensions())}"
    )
