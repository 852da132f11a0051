"""Booknook - personal e-book library with sync."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from booknook.ai.client import AIClient
from booknook.config import AppConfig, load_config
from booknook.errors import BooknookError
from booknook.events import EventBus
from booknook.library.database import Database
from booknook.library.importer import BookImporter
from booknook.library.lifecycle import DataLifecycleManager
from booknook.library.preferences import Preferences
from booknook.library.service import BookService
from booknook.sync.engine import ConflictPolicy, SyncEngine
from booknook.sync.remote import (
    AccountStatus,
    JsonFileRecordStore,
    MemoryRecordStore,
    RemoteRecordStore,
)

log = logging.getLogger(__name__)


class Booknook:
    """Owns the services of one library and wires them together."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        remote: Optional[RemoteRecordStore] = None,
    ) -> None:
        self.config = config or load_config()
        self.events = EventBus()
        self.db = Database(self.config.db_path)
        self.preferences = Preferences(self.config.prefs_path)
        self.books = BookService(self.db, user_id=self.config.user_id)
        self.importer = BookImporter(self.config, self.db, self.events)
        self.remote = remote or self._default_remote()
        self.sync = SyncEngine(
            self.db,
            self.remote,
            events=self.events,
            user_id=self.config.user_id,
            policy=ConflictPolicy(self.config.conflict_policy),
            preferences=self.preferences,
        )
        self.lifecycle = DataLifecycleManager(
            self.config, self.db, self.sync, self.preferences, self.events
        )
        self.ai = AIClient(self.config.ai)

    def _default_remote(self) -> RemoteRecordStore:
        if self.config.sync_store_path is not None:
            return JsonFileRecordStore(self.config.sync_store_path)
        return MemoryRecordStore(status=AccountStatus.NO_ACCOUNT)

    async def close(self) -> None:
        self.sync.close()
        await self.ai.close()
        self.db.close()


def _setup_logging(config: AppConfig) -> None:
    handler = logging.FileHandler(config.log_path, encoding="utf-8")
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    root = logging.getLogger("booknook")
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)


# ── Commands ───────────────────────────────────────────


async def _cmd_import(app: Booknook, args: argparse.Namespace) -> int:
    results = await app.importer.import_books(args.files)
    failed = 0
    for source, result in zip(args.files, results):
        if isinstance(result, BooknookError):
            print(f"{source}: {result.message}", file=sys.stderr)
            failed += 1
        elif isinstance(result, BaseException):
            raise result
        else:
            print(f"{result.id}  {result.title} ({result.author})")
    return 1 if failed else 0


async def _cmd_list(app: Booknook, args: argparse.Namespace) -> int:
    books = app.books.search_books(args.query) if args.query else app.books.list_books()
    for book in books:
        print(f"{book.id}  {book.title} - {book.author} [{book.file_format}]")
    return 0


async def _cmd_sync(app: Booknook, args: argparse.Namespace) -> int:
    status = await app.sync.initialize()
    print(f"Sync {status.value}")
    if app.sync.last_error is not None:
        print(app.sync.last_error.message, file=sys.stderr)
        return 1
    return 0


async def _cmd_export(app: Booknook, args: argparse.Namespace) -> int:
    path = app.lifecycle.export_user_data(Path(args.output) if args.output else None)
    print(path)
    return 0


async def _cmd_wipe(app: Booknook, args: argparse.Namespace) -> int:
    if not args.yes:
        print("Refusing to delete all data without --yes", file=sys.stderr)
        return 2
    await app.lifecycle.delete_all_user_data()
    print("All user data deleted")
    return 0


async def _cmd_delete(app: Booknook, args: argparse.Namespace) -> int:
    if args.reading_data:
        await app.lifecycle.delete_reading_data(args.book_id)
    else:
        await app.lifecycle.delete_book(args.book_id)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="booknook", description=__doc__)
    parser.add_argument("--env", type=Path, help="Path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="Import EPUB or text files")
    p.add_argument("files", nargs="+")
    p.set_defaults(handler=_cmd_import)

    p = sub.add_parser("list", help="List or search the library")
    p.add_argument("query", nargs="?", default="")
    p.set_defaults(handler=_cmd_list)

    p = sub.add_parser("sync", help="Sync reading state with the remote store")
    p.set_defaults(handler=_cmd_sync)

    p = sub.add_parser("export", help="Export all user data to a zip archive")
    p.add_argument("-o", "--output", help="Archive path")
    p.set_defaults(handler=_cmd_export)

    p = sub.add_parser("wipe", help="Delete all books and reading data")
    p.add_argument("--yes", action="store_true", help="Confirm deletion")
    p.set_defaults(handler=_cmd_wipe)

    p = sub.add_parser("delete", help="Delete one book")
    p.add_argument("book_id")
    p.add_argument(
        "--reading-data",
        action="store_true",
        help="Only delete progress, highlights and annotations",
    )
    p.set_defaults(handler=_cmd_delete)
    return parser


async def _run(config: AppConfig, args: argparse.Namespace) -> int:
    app = Booknook(config)
    try:
        return await args.handler(app, args)
    except BooknookError as e:
        log.error("%s failed: %s", args.command, e)
        print(e.message, file=sys.stderr)
        return 1
    finally:
        await app.close()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.env)
    _setup_logging(config)
    return asyncio.run(_run(config, args))


if __name__ == "__main__":
    sys.exit(main())
