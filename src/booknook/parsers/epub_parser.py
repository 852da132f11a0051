"""EPUB parser: container + package document metadata, spine chapters, cover."""

from __future__ import annotations

import logging
import posixpath
import re
import warnings
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning

warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)

from booknook.errors import (
    InvalidContainerError,
    MalformedXMLError,
    MissingContainerError,
    MissingPackageError,
)
from booknook.library.models import BookContent, BookMetadata, ParsedChapter

from .archive import ArchiveEntry, ArchiveHandle, ArchiveReader
from .base import BaseParser

log = logging.getLogger(__name__)

CONTAINER_PATH = "META-INF/container.xml"
DEFAULT_TITLE = "Untitled"
DEFAULT_AUTHOR = "Unknown"

_IMAGE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
}


class EpubParser(BaseParser):
    FORMAT = "epub"
    SUPPORTED_EXTENSIONS = (".epub",)

    def parse(self, file_path: Path) -> BookContent:
        with ArchiveReader.open(file_path) as archive:
            opf_path, opf = self._load_package(archive)
            meta = self._extract_metadata(opf)
            chapters = self._extract_chapters(archive, opf, posixpath.dirname(opf_path))
        return BookContent(metadata=meta, chapters=chapters)

    def read_metadata(self, file_path: Path) -> BookMetadata:
        """Title, authors and language only; skips chapter extraction."""
        with ArchiveReader.open(file_path) as archive:
            _, opf = self._load_package(archive)
            return self._extract_metadata(opf)

    def extract_cover(self, file_path: Path, dest_dir: Path) -> Optional[Path]:
        """Copy the cover image into ``dest_dir``. Returns None if the book has none."""
        with ArchiveReader.open(file_path) as archive:
            opf_path, opf = self._load_package(archive)
            found = self._find_cover(archive, opf, posixpath.dirname(opf_path))
            if found is None:
                return None
            entry, ext = found
            dest_dir.mkdir(parents=True, exist_ok=True)
            target = dest_dir / f"cover{ext}"
            with open(target, "wb") as fh:
                for chunk in archive.extract(entry):
                    fh.write(chunk)
        return target

    # ── Container / package document ───────────────────

    def _load_package(self, archive: ArchiveHandle) -> tuple[str, BeautifulSoup]:
        container_entry = archive.lookup(CONTAINER_PATH)
        if container_entry is None:
            raise MissingContainerError()

        container = self._parse_xml(archive.read(container_entry), CONTAINER_PATH)
        rootfile = container.find("rootfile", attrs={"full-path": True})
        opf_path = rootfile["full-path"].strip() if rootfile else ""
        if not opf_path:
            raise InvalidContainerError()

        opf_entry = archive.lookup(opf_path)
        if opf_entry is None:
            raise MissingPackageError(f"Package document not found: {opf_path}")
        return opf_path, self._parse_xml(archive.read(opf_entry), opf_path)

    @staticmethod
    def _parse_xml(data: bytes, name: str) -> BeautifulSoup:
        soup = BeautifulSoup(data, "xml")
        if soup.find() is None:
            raise MalformedXMLError(f"Malformed XML in {name}")
        return soup

    def _extract_metadata(self, opf: BeautifulSoup) -> BookMetadata:
        scope = opf.find("metadata") or opf

        title_tag = scope.find("title")
        title = title_tag.get_text(strip=True) if title_tag else ""

        authors = [
            text for text in (t.get_text(strip=True) for t in scope.find_all("creator"))
            if text
        ]

        lang_tag = scope.find("language")
        language = lang_tag.get_text(strip=True) if lang_tag else ""

        return BookMetadata(
            title=title or DEFAULT_TITLE,
            authors=authors or [DEFAULT_AUTHOR],
            language=language or self.fallback_language,
            format=self.FORMAT,
        )

    @staticmethod
    def _manifest(opf: BeautifulSoup) -> dict[str, dict[str, str]]:
        manifest = opf.find("manifest")
        items: dict[str, dict[str, str]] = {}
        if manifest is None:
            return items
        for item in manifest.find_all("item"):
            item_id = item.get("id")
            if item_id and item.get("href"):
                items[item_id] = {
                    "href": item["href"],
                    "media_type": item.get("media-type", ""),
                    "properties": item.get("properties", ""),
                }
        return items

    @staticmethod
    def _resolve(base_dir: str, href: str) -> str:
        href = unquote(href.split("#")[0])
        return posixpath.normpath(posixpath.join(base_dir, href)) if base_dir else href

    # ── Chapters ───────────────────────────────────────

    def _extract_chapters(
        self, archive: ArchiveHandle, opf: BeautifulSoup, base_dir: str
    ) -> list[ParsedChapter]:
        manifest = self._manifest(opf)
        spine = opf.find("spine")
        idrefs = [ref.get("idref") for ref in spine.find_all("itemref")] if spine else []

        chapters: list[ParsedChapter] = []
        for idref in idrefs:
            item = manifest.get(idref or "")
            if item is None:
                continue
            entry = archive.lookup(self._resolve(base_dir, item["href"]))
            if entry is None:
                log.debug("Spine item %s missing from archive", item["href"])
                continue

            html = archive.read(entry).decode("utf-8", errors="replace")
            paragraphs = self._html_to_paragraphs(html)
            if not paragraphs:
                continue

            number = len(chapters) + 1
            title = self._extract_title(html) or f"Chapter {number}"
            chapters.append(
                ParsedChapter(number=number, title=title, content="\n\n".join(paragraphs))
            )
        return chapters

    _BLOCK_TAGS = frozenset(
        ["p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "blockquote", "pre"]
    )

    def _html_to_paragraphs(self, html: str) -> list[str]:
        soup = BeautifulSoup(html, "lxml")

        for tag in soup.find_all(["script", "style", "sup"]):
            tag.decompose()

        paragraphs: list[str] = []
        block_tags = soup.find_all(list(self._BLOCK_TAGS))

        if block_tags:
            for tag in block_tags:
                if tag.find(list(self._BLOCK_TAGS)):
                    continue
                text = re.sub(r"\s+", " ", tag.get_text(separator=" ", strip=True)).strip()
                if text:
                    paragraphs.append(text)
        else:
            body = soup.body or soup
            for para in re.split(r"\n\s*\n", body.get_text(separator="\n")):
                cleaned = re.sub(r"\s+", " ", para).strip()
                if cleaned:
                    paragraphs.append(cleaned)

        return paragraphs

    def _extract_title(self, html: str) -> str:
        """Try to extract a title from heading tags."""
        soup = BeautifulSoup(html, "lxml")
        for level in ["h1", "h2", "h3", "title"]:
            tag = soup.find(level)
            if tag:
                text = tag.get_text(strip=True)
                if text and len(text) < 200:
                    return text
        return ""

    # ── Cover ──────────────────────────────────────────

    def _find_cover(
        self, archive: ArchiveHandle, opf: BeautifulSoup, base_dir: str
    ) -> Optional[tuple[ArchiveEntry, str]]:
        manifest = self._manifest(opf)
        images = {
            item_id: item
            for item_id, item in manifest.items()
            if item["media_type"].startswith("image/")
        }

        candidates: list[dict[str, str]] = []
        # EPUB 3
        candidates.extend(
            item for item in images.values() if "cover-image" in item["properties"].split()
        )
        # EPUB 2: <meta name="cover" content="item-id"/>
        meta = opf.find("meta", attrs={"name": "cover"})
        if meta is not None and meta.get("content") in images:
            candidates.append(images[meta["content"]])
        candidates.extend(
            item
            for item_id, item in images.items()
            if "cover" in item_id.lower() or "cover" in item["href"].lower()
        )

        for item in candidates:
            entry = archive.lookup(self._resolve(base_dir, item["href"]))
            if entry is not None:
                ext = _IMAGE_EXTENSIONS.get(
                    item["media_type"], posixpath.splitext(item["href"])[1] or ".img"
                )
                return entry, ext
        return None
