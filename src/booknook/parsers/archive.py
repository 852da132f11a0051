"""Read-only access to ZIP containers (EPUB and friends)."""

from __future__ import annotations

import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from booknook.errors import ArchiveUnreadableError

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ArchiveEntry:
    path: str
    size: int
    compressed_size: int


class ArchiveHandle:
    """An open container. Only valid inside ``ArchiveReader.open``."""

    def __init__(self, zf: zipfile.ZipFile) -> None:
        self._zf = zf
        self._index = {info.filename: info for info in zf.infolist()}

    def names(self) -> list[str]:
        return list(self._index)

    def lookup(self, entry_path: str) -> Optional[ArchiveEntry]:
        info = self._index.get(entry_path.lstrip("/"))
        if info is None or info.is_dir():
            return None
        return ArchiveEntry(
            path=info.filename,
            size=info.file_size,
            compressed_size=info.compress_size,
        )

    def extract(self, entry: ArchiveEntry, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the entry's bytes in chunks. Single pass; not restartable."""
        try:
            with self._zf.open(entry.path) as fh:
                while True:
                    chunk = fh.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
        except (zipfile.BadZipFile, zipfile.LargeZipFile, KeyError, OSError) as e:
            raise ArchiveUnreadableError(f"Cannot read entry {entry.path}: {e}") from e

    def read(self, entry: ArchiveEntry) -> bytes:
        return b"".join(self.extract(entry))


class ArchiveReader:
    @staticmethod
    @contextmanager
    def open(file_path: Path) -> Iterator[ArchiveHandle]:
        try:
            zf = zipfile.ZipFile(file_path)
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveUnreadableError(f"Not a valid container: {file_path.name}") from e
        try:
            yield ArchiveHandle(zf)
        finally:
            zf.close()
