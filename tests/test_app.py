"""Tests for the command-line entry point and service wiring."""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path

import pytest

from booknook.app import Booknook, build_parser, main
from booknook.config import AppConfig
from booknook.sync.engine import ConflictPolicy, SyncStatus
from booknook.sync.remote import JsonFileRecordStore, MemoryRecordStore

_ENV_KEYS = (
    "BOOKNOOK_DATA_DIR",
    "BOOKNOOK_CACHE_DIR",
    "BOOKNOOK_USER_ID",
    "BOOKNOOK_SYNC_STORE",
    "BOOKNOOK_CONFLICT_POLICY",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("BOOKNOOK_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("BOOKNOOK_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.chdir(tmp_path)
    logger = logging.getLogger("booknook")
    handlers = list(logger.handlers)
    yield
    for handler in logger.handlers[:]:
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def novel(tmp_path: Path) -> Path:
    f = tmp_path / "novel.txt"
    f.write_text("My Novel\nChapter 1 Start\nIt begins.\nChapter 2 End\nIt ends.")
    return f


class TestParser:
    def test_import_files(self):
        args = build_parser().parse_args(["import", "a.txt", "b.epub"])
        assert args.command == "import"
        assert args.files == ["a.txt", "b.epub"]

    def test_wipe_requires_flag(self):
        assert build_parser().parse_args(["wipe"]).yes is False
        assert build_parser().parse_args(["wipe", "--yes"]).yes is True

    def test_delete_options(self):
        args = build_parser().parse_args(["delete", "b1", "--reading-data"])
        assert args.book_id == "b1"
        assert args.reading_data is True

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:
    def test_import_and_list(self, novel: Path, capsys: pytest.CaptureFixture):
        assert main(["import", str(novel)]) == 0
        assert "My Novel" in capsys.readouterr().out

        assert main(["list"]) == 0
        out = capsys.readouterr().out
        assert "My Novel" in out
        assert "[txt]" in out

        assert main(["list", "nothing-matches"]) == 0
        assert capsys.readouterr().out == ""

    def test_import_failure_reported(self, tmp_path: Path, capsys: pytest.CaptureFixture):
        bad = tmp_path / "paper.pdf"
        bad.write_bytes(b"%PDF")
        assert main(["import", str(bad)]) == 1
        assert "Unsupported format: .pdf" in capsys.readouterr().err

    def test_wipe_without_confirmation(self, capsys: pytest.CaptureFixture):
        assert main(["wipe"]) == 2
        assert "--yes" in capsys.readouterr().err

    def test_wipe(self, novel: Path, tmp_path: Path):
        main(["import", str(novel)])
        assert main(["wipe", "--yes"]) == 0
        assert not (tmp_path / "data" / "Books").exists()

    def test_delete_unknown_book(self, capsys: pytest.CaptureFixture):
        assert main(["delete", "missing"]) == 1
        assert "not found" in capsys.readouterr().err

    def test_export(self, novel: Path, tmp_path: Path):
        main(["import", str(novel)])
        out = tmp_path / "backup.zip"
        assert main(["export", "-o", str(out)]) == 0
        with zipfile.ZipFile(out) as zf:
            assert "books.json" in zf.namelist()

    def test_sync_without_account(self, capsys: pytest.CaptureFixture):
        assert main(["sync"]) == 0
        assert "Sync disabled" in capsys.readouterr().out

    def test_sync_with_file_store(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture,
    ):
        monkeypatch.setenv("BOOKNOOK_SYNC_STORE", str(tmp_path / "remote.json"))
        assert main(["sync"]) == 0
        assert "Sync completed" in capsys.readouterr().out

    def test_log_file_written(self, novel: Path, tmp_path: Path):
        main(["import", str(novel)])
        assert (tmp_path / "data" / "booknook.log").exists()


class TestBooknook:
    @pytest.mark.asyncio
    async def test_wiring(self, tmp_path: Path):
        config = AppConfig(
            data_dir=tmp_path / "d",
            config_dir=tmp_path / "c",
            cache_dir=tmp_path / "k",
            conflict_policy="local_wins",
            user_id="alice",
        )
        app = Booknook(config)
        try:
            assert isinstance(app.remote, MemoryRecordStore)
            assert app.sync._policy is ConflictPolicy.LOCAL_WINS
            assert await app.sync.initialize() is SyncStatus.DISABLED
            assert app.books.list_books() == []
        finally:
            await app.close()

    @pytest.mark.asyncio
    async def test_file_store_selected(self, tmp_path: Path):
        config = AppConfig(data_dir=tmp_path / "d", config_dir=tmp_path / "c")
        config.sync_store_path = tmp_path / "remote.json"
        app = Booknook(config)
        try:
            assert isinstance(app.remote, JsonFileRecordStore)
        finally:
            await app.close()
