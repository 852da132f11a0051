"""Exception types shared across the import, library, sync and AI layers."""

from __future__ import annotations


class BooknookError(Exception):
    """Base error. ``message`` is safe to show to the user."""

    default_message = "Unexpected error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ── File access ────────────────────────────────────────


class FileAccessError(BooknookError):
    default_message = "File could not be accessed"


class FileMissingError(FileAccessError):
    default_message = "File does not exist"


class FileTooLargeError(FileAccessError):
    default_message = "File is too large"


class FilePermissionError(FileAccessError):
    default_message = "Permission denied"


# ── Formats ────────────────────────────────────────────


class FormatError(BooknookError):
    default_message = "File could not be parsed"


class UnsupportedFileTypeError(FormatError):
    default_message = "Unsupported file type. Choose an EPUB or plain-text file."


class ArchiveUnreadableError(FormatError):
    default_message = "Not a readable archive"


class MissingContainerError(FormatError):
    default_message = "META-INF/container.xml is missing"


class MissingPackageError(FormatError):
    default_message = "Package document (OPF) is missing"


class InvalidContainerError(FormatError):
    default_message = "container.xml has no root file reference"


class MalformedXMLError(FormatError):
    default_message = "Malformed XML"


class UnsupportedEncodingError(FormatError):
    default_message = "Unsupported text encoding"


# ── Import ─────────────────────────────────────────────


class BookImportError(BooknookError):
    default_message = "Import failed"


class CopyError(BookImportError):
    default_message = "Could not copy the file into the library"


# ── Persistence ────────────────────────────────────────


class PersistenceError(BooknookError):
    default_message = "Database operation failed"


class EntityNotFoundError(PersistenceError):
    default_message = "Record not found"


class InvalidDataError(PersistenceError):
    default_message = "Invalid record data"


# ── Sync ───────────────────────────────────────────────


class SyncError(BooknookError):
    default_message = "Sync failed"


class AccountUnavailableError(SyncError):
    default_message = "Sync account is unavailable"


class RemoteStoreError(SyncError):
    default_message = "Remote store is unreachable"


class InvalidRecordError(SyncError):
    default_message = "Invalid remote record"


class ConflictResolutionError(SyncError):
    default_message = "Could not resolve a sync conflict"


# ── Network ────────────────────────────────────────────


class NetworkError(BooknookError):
    default_message = "Network error"


class TransportError(NetworkError):
    default_message = "Could not reach the server"


class HttpError(NetworkError):
    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(message or f"HTTP error {status_code}")


class DecodingError(NetworkError):
    default_message = "Unexpected response format"
