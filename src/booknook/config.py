"""Configuration management via .env file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from booknook import __version__ as APP_VERSION

MAX_IMPORT_BYTES = 50 * 1024 * 1024


def _xdg_data_home() -> Path:
    return Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))


def _xdg_config_home() -> Path:
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def _xdg_cache_home() -> Path:
    return Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache"))


@dataclass
class AIServiceConfig:
    base_url: str = "http://localhost:8000"
    api_token: str = ""
    timeout: float = 30.0


@dataclass
class AppConfig:
    # Paths
    data_dir: Path = field(default_factory=lambda: _xdg_data_home() / "booknook")
    config_dir: Path = field(default_factory=lambda: _xdg_config_home() / "booknook")
    cache_dir: Path = field(default_factory=lambda: _xdg_cache_home() / "booknook")
    db_path: Path = field(init=False)
    books_dir: Path = field(init=False)
    covers_dir: Path = field(init=False)
    exports_dir: Path = field(init=False)
    prefs_path: Path = field(init=False)

    # Import / parsing
    max_import_bytes: int = MAX_IMPORT_BYTES
    fallback_language: str = "zh-Hans"
    legacy_encoding: str = "gb18030"

    # Sync
    user_id: str = "default_user"
    conflict_policy: str = "newest_wins"  # newest_wins, remote_wins, local_wins
    sync_store_path: Optional[Path] = None

    ai: AIServiceConfig = field(default_factory=AIServiceConfig)

    log_path: Path = field(init=False)

    def __post_init__(self) -> None:
        self.db_path = self.data_dir / "booknook.db"
        self.log_path = self.data_dir / "booknook.log"
        self.books_dir = self.data_dir / "Books"
        self.covers_dir = self.data_dir / "Covers"
        self.exports_dir = self.data_dir / "Exports"
        self.prefs_path = self.config_dir / "preferences.json"
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config_dir.mkdir(parents=True, exist_ok=True)


def load_config(env_path: Optional[Path] = None) -> AppConfig:
    """Load config from .env file. Searches CWD then config dir."""
    search_paths = [
        env_path,
        Path.cwd() / ".env",
        _xdg_config_home() / "booknook" / ".env",
        Path.home() / ".env",
    ]
    for p in search_paths:
        if p and p.exists():
            load_dotenv(p)
            break

    defaults = AppConfig()
    kwargs = {}
    if os.getenv("BOOKNOOK_DATA_DIR"):
        kwargs["data_dir"] = Path(os.environ["BOOKNOOK_DATA_DIR"]).expanduser()
    if os.getenv("BOOKNOOK_CACHE_DIR"):
        kwargs["cache_dir"] = Path(os.environ["BOOKNOOK_CACHE_DIR"]).expanduser()

    sync_store = os.getenv("BOOKNOOK_SYNC_STORE", "")
    config = AppConfig(
        max_import_bytes=int(
            os.getenv("BOOKNOOK_MAX_IMPORT_BYTES", defaults.max_import_bytes)
        ),
        fallback_language=os.getenv(
            "BOOKNOOK_FALLBACK_LANGUAGE", defaults.fallback_language
        ),
        legacy_encoding=os.getenv("BOOKNOOK_LEGACY_ENCODING", defaults.legacy_encoding),
        user_id=os.getenv("BOOKNOOK_USER_ID", defaults.user_id),
        conflict_policy=os.getenv(
            "BOOKNOOK_CONFLICT_POLICY", defaults.conflict_policy
        ),
        sync_store_path=Path(sync_store).expanduser() if sync_store else None,
        ai=AIServiceConfig(
            base_url=os.getenv("BOOKNOOK_API_BASE_URL", defaults.ai.base_url),
            api_token=os.getenv("BOOKNOOK_API_TOKEN", ""),
            timeout=float(os.getenv("BOOKNOOK_API_TIMEOUT", defaults.ai.timeout)),
        ),
        **kwargs,
    )
    return config
