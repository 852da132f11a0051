"""Remote record store contract and the bundled implementations."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence

from booknook.errors import InvalidRecordError, RemoteStoreError

log = logging.getLogger(__name__)

# (record_type, record_id, change) where change is "create", "update" or "delete"
ChangeCallback = Callable[[str, str, str], None]


class AccountStatus(str, Enum):
    AVAILABLE = "available"
    NO_ACCOUNT = "no_account"
    RESTRICTED = "restricted"
    COULD_NOT_DETERMINE = "could_not_determine"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"


@dataclass
class RemoteRecord:
    record_type: str
    fields: dict[str, Any] = field(default_factory=dict)
    record_id: Optional[str] = None  # assigned by the store
    modified_at: float = 0.0  # store clock


class RemoteRecordStore(ABC):
    @abstractmethod
    async def account_status(self) -> AccountStatus:
        """Whether the account backing this store can be used."""

    @abstractmethod
    async def save(
        self, record: RemoteRecord, key_fields: Sequence[str] = ()
    ) -> RemoteRecord:
        """Create or update a record.

        An existing record is found by ``record.record_id`` first, then by equal
        values of ``key_fields``; only when neither matches is a new record
        created. Saving the same content twice never creates a duplicate.
        """

    @abstractmethod
    async def query(
        self, record_type: str, where: Optional[dict[str, Any]] = None
    ) -> list[RemoteRecord]:
        """Records of a type matching ``where`` (field equality), newest first."""

    @abstractmethod
    async def delete(self, record_type: str, record_ids: Iterable[str]) -> int:
        """Delete records by id. Returns how many existed."""

    @abstractmethod
    def subscribe(self, record_type: str, callback: ChangeCallback) -> Callable[[], None]:
        """Register for change notifications. Returns an unsubscribe callable."""


class MemoryRecordStore(RemoteRecordStore):
    """Process-local store. Used in tests and as the base of the file store."""

    def __init__(self, status: AccountStatus = AccountStatus.AVAILABLE) -> None:
        self.status = status
        self._lock = threading.RLock()
        self._records: dict[str, dict[str, RemoteRecord]] = defaultdict(dict)
        self._subscribers: dict[str, list[ChangeCallback]] = defaultdict(list)
        self._last_tick = 0.0

    def _tick(self) -> float:
        self._last_tick = max(time.time(), self._last_tick + 1e-6)
        return self._last_tick

    async def account_status(self) -> AccountStatus:
        return self.status

    async def save(
        self, record: RemoteRecord, key_fields: Sequence[str] = ()
    ) -> RemoteRecord:
        missing = [k for k in key_fields if record.fields.get(k) in (None, "")]
        if missing:
            raise InvalidRecordError(
                f"{record.record_type} record lacks key fields: {', '.join(missing)}"
            )
        with self._lock:
            bucket = self._records[record.record_type]
            existing = bucket.get(record.record_id) if record.record_id else None
            if existing is None and key_fields:
                existing = next(
                    (
                        r
                        for r in bucket.values()
                        if all(r.fields.get(k) == record.fields[k] for k in key_fields)
                    ),
                    None,
                )

            if existing is not None:
                existing.fields = dict(record.fields)
                existing.modified_at = self._tick()
                saved, change = existing, "update"
            else:
                saved = RemoteRecord(
                    record_type=record.record_type,
                    fields=dict(record.fields),
                    record_id=uuid.uuid4().hex,
                    modified_at=self._tick(),
                )
                bucket[saved.record_id] = saved
                change = "create"
            self._persist()
            result = replace(saved, fields=dict(saved.fields))

        self._notify(record.record_type, result.record_id, change)
        return result

    async def query(
        self, record_type: str, where: Optional[dict[str, Any]] = None
    ) -> list[RemoteRecord]:
        with self._lock:
            records = [
                replace(r, fields=dict(r.fields))
                for r in self._records.get(record_type, {}).values()
                if not where or all(r.fields.get(k) == v for k, v in where.items())
            ]
        records.sort(key=lambda r: r.modified_at, reverse=True)
        return records

    async def delete(self, record_type: str, record_ids: Iterable[str]) -> int:
        deleted: list[str] = []
        with self._lock:
            bucket = self._records.get(record_type, {})
            for rid in record_ids:
                if bucket.pop(rid, None) is not None:
                    deleted.append(rid)
            if deleted:
                self._persist()
        for rid in deleted:
            self._notify(record_type, rid, "delete")
        return len(deleted)

    def subscribe(self, record_type: str, callback: ChangeCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers[record_type].append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[record_type]:
                    self._subscribers[record_type].remove(callback)

        return _unsubscribe

    def _notify(self, record_type: str, record_id: str, change: str) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(record_type, []))
        for callback in callbacks:
            try:
                callback(record_type, record_id, change)
            except Exception as exc:
                log.error("Change callback failed for %s: %s", record_type, exc)

    def _persist(self) -> None:
        pass


class JsonFileRecordStore(MemoryRecordStore):
    """Records kept in one JSON file, e.g. inside a folder shared between devices.

    The account counts as available while the file's directory exists.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        self._reload()

    async def account_status(self) -> AccountStatus:
        if self._path.parent.is_dir():
            return AccountStatus.AVAILABLE
        return AccountStatus.TEMPORARILY_UNAVAILABLE

    def _reload(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise RemoteStoreError(f"Cannot read sync store {self._path}: {e}") from e
        with self._lock:
            self._records.clear()
            for raw in data.get("records", []):
                rec = RemoteRecord(**raw)
                self._records[rec.record_type][rec.record_id] = rec
                self._last_tick = max(self._last_tick, rec.modified_at)

    def _persist(self) -> None:
        records = [asdict(r) for bucket in self._records.values() for r in bucket.values()]
        tmp = self._path.with_suffix(".tmp")
        try:
            tmp.write_text(
                json.dumps({"records": records}, ensure_ascii=False), encoding="utf-8"
            )
            tmp.replace(self._path)
        except OSError as e:
            raise RemoteStoreError(f"Cannot write sync store {self._path}: {e}") from e

    async def save(
        self, record: RemoteRecord, key_fields: Sequence[str] = ()
    ) -> RemoteRecord:
        self._reload()
        return await super().save(record, key_fields)

    async def query(
        self, record_type: str, where: Optional[dict[str, Any]] = None
    ) -> list[RemoteRecord]:
        self._reload()
        return await super().query(record_type, where)

    async def delete(self, record_type: str, record_ids: Iterable[str]) -> int:
        self._reload()
        return await super().delete(record_type, record_ids)
