"""
Document store for user and organization records.

Provides:
- Live watches on a single document (current snapshot first, then every change)
- Equality lookup of organizations by a top-level field
- An atomic merge write: dotted/tuple field paths, nested-map deep merge and the
  ``ArrayUnion`` / ``ArrayRemove`` / ``DELETE_FIELD`` transforms, applied in one
  transaction so no reader ever sees half of an update

``SqliteDocumentStore`` persists JSON documents with aiosqlite.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

import aiosqlite
import structlog

from .subscriptions import Subscription

log = structlog.get_logger()

USERS = "users"
ORGANIZATIONS = "organizations"

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ---------------------------------------------------------------------------
# Field transforms
# ---------------------------------------------------------------------------

class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


class ArrayUnion:
    """Append each value not already present in the array."""

    def __init__(self, *values: Any) -> None:
        self.values = values

    def apply(self, current: Any) -> list:
        result = list(current) if isinstance(current, list) else []
        for value in self.values:
            if value not in result:
                result.append(value)
        return result


class ArrayRemove:
    """Remove every occurrence of each value from the array."""

    def __init__(self, *values: Any) -> None:
        self.values = values

    def apply(self, current: Any) -> list:
        if not isinstance(current, list):
            return []
        return [item for item in current if item not in self.values]


FieldPath = str | tuple[str, ...]


def _split_path(path: FieldPath) -> tuple[str, ...]:
    parts = tuple(path.split(".")) if isinstance(path, str) else tuple(path)
    if not parts or any(not p for p in parts):
        raise ValueError(f"Invalid field path: {path!r}")
    return parts


def _deep_merge(base: dict, patch: dict) -> dict:
    """JSON Merge Patch style deep merge."""
    result = base.copy()
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def apply_merge(document: Mapping[str, Any] | None, updates: Mapping[FieldPath, Any]) -> dict:
    """Return a new document with ``updates`` applied to ``document``."""
    result = copy.deepcopy(dict(document or {}))
    for path, value in updates.items():
        *parents, leaf = _split_path(path)
        target = result
        for part in parents:
            child = target.get(part)
            if not isinstance(child, dict):
                if value is DELETE_FIELD:
                    target = None
                    break
                child = {}
                target[part] = child
            target = child
        if target is None:
            continue

        if value is DELETE_FIELD:
            target.pop(leaf, None)
        elif isinstance(value, (ArrayUnion, ArrayRemove)):
            target[leaf] = value.apply(target.get(leaf))
        elif isinstance(value, dict) and isinstance(target.get(leaf), dict):
            target[leaf] = _deep_merge(target[leaf], copy.deepcopy(value))
        else:
            target[leaf] = copy.deepcopy(value)
    return result


# ---------------------------------------------------------------------------
# Snapshots & watchers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentSnapshot:
    """A point-in-time copy of one document; ``data`` is None when it does not exist."""
    id: str
    data: dict[str, Any] | None

    @property
    def exists(self) -> bool:
        return self.data is not None


SnapshotHandler = Callable[[DocumentSnapshot], Awaitable[None]]


@dataclass
class _Watcher:
    handler: SnapshotHandler
    subscription: Subscription | None = None
    version: int = -1


@dataclass
class _Document:
    data: dict[str, Any] | None
    version: int = 0


class DocumentStore(ABC):
    """
    Base document store: watch bookkeeping, merge orchestration and dispatch.

    Subclasses implement the raw persistence primitives. Every write bumps a
    per-document version; watchers never receive a snapshot older than one
    they have already seen, so a slow initial read cannot overwrite a fresher
    change notification.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._watchers: dict[tuple[str, str], list[_Watcher]] = {}
        self._versions: dict[tuple[str, str], int] = {}

    # --- Persistence primitives ---

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def _read(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    async def _write(self, collection: str, doc_id: str, data: dict[str, Any]) -> None: ...

    @abstractmethod
    async def _find(
        self, collection: str, field_name: str, value: Any
    ) -> tuple[str, dict[str, Any]] | None: ...

    @abstractmethod
    async def _scan(self, collection: str) -> list[tuple[str, dict[str, Any]]]: ...

    # --- Reads ---

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        return await self._read(USERS, user_id)

    async def get_organization(self, org_id: str) -> dict[str, Any] | None:
        return await self._read(ORGANIZATIONS, org_id)

    async def find_organization(
        self, field_name: str, value: Any
    ) -> tuple[str, dict[str, Any]] | None:
        """First organization (in insertion order) whose ``field_name`` equals ``value``."""
        if not _FIELD_NAME.match(field_name):
            raise ValueError(f"Invalid field name: {field_name!r}")
        return await self._find(ORGANIZATIONS, field_name, value)

    async def list_users(self) -> list[tuple[str, dict[str, Any]]]:
        return await self._scan(USERS)

    # --- Writes ---

    async def merge_user(self, user_id: str, updates: Mapping[FieldPath, Any]) -> dict[str, Any]:
        """Atomically merge ``updates`` into the user document, creating it if absent."""
        return await self._merge(USERS, user_id, updates)

    async def put_organization(self, org_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        """Create or merge an organization document."""
        return await self._merge(ORGANIZATIONS, org_id, dict(data))

    async def _merge(
        self, collection: str, doc_id: str, updates: Mapping[FieldPath, Any]
    ) -> dict[str, Any]:
        key = (collection, doc_id)
        async with self._lock:
            current = await self._read(collection, doc_id)
            merged = apply_merge(current, updates)
            await self._write(collection, doc_id, merged)
            version = self._versions.get(key, 0) + 1
            self._versions[key] = version
        log.debug("store.merged", collection=collection, doc_id=doc_id, fields=len(updates))
        await self._publish(key, _Document(merged, version))
        return copy.deepcopy(merged)

    # --- Live watches ---

    async def watch_user(self, user_id: str, handler: SnapshotHandler) -> Subscription:
        return await self._watch(USERS, user_id, handler)

    async def watch_organization(self, org_id: str, handler: SnapshotHandler) -> Subscription:
        return await self._watch(ORGANIZATIONS, org_id, handler)

    async def _watch(
        self, collection: str, doc_id: str, handler: SnapshotHandler
    ) -> Subscription:
        key = (collection, doc_id)
        watcher = _Watcher(handler)
        subscription = Subscription(
            name=f"{collection}/{doc_id}",
            on_close=lambda: self._unwatch(key, watcher),
        )
        watcher.subscription = subscription
        self._watchers.setdefault(key, []).append(watcher)

        async with self._lock:
            data = await self._read(collection, doc_id)
            version = self._versions.get(key, 0)
        await self._deliver(key, watcher, _Document(data, version))
        return subscription

    def _unwatch(self, key: tuple[str, str], watcher: _Watcher) -> None:
        watchers = self._watchers.get(key)
        if not watchers:
            return
        if watcher in watchers:
            watchers.remove(watcher)
        if not watchers:
            del self._watchers[key]

    def watcher_count(self) -> int:
        return sum(len(w) for w in self._watchers.values())

    async def _publish(self, key: tuple[str, str], document: _Document) -> None:
        for watcher in list(self._watchers.get(key, ())):
            await self._deliver(key, watcher, document)

    async def _deliver(self, key: tuple[str, str], watcher: _Watcher, document: _Document) -> None:
        if watcher.subscription is None or not watcher.subscription.active:
            return
        if document.version <= watcher.version:
            return
        watcher.version = document.version
        snapshot = DocumentSnapshot(id=key[1], data=copy.deepcopy(document.data))
        try:
            await watcher.handler(snapshot)
        except Exception:
            log.exception("store.handler_error", collection=key[0], doc_id=key[1])


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id         TEXT NOT NULL,
    data       TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);
"""


class SqliteDocumentStore(DocumentStore):
    """Async SQLite document store; one JSON object per (collection, id)."""

    def __init__(self, db_path: str):
        super().__init__()
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "SqliteDocumentStore":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _read(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        assert self._db
        cursor = await self._db.execute(
            "SELECT data FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        )
        row = await cursor.fetchone()
        return json.loads(row["data"]) if row else None

    async def _write(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        assert self._db
        now = datetime.now(timezone.utc).isoformat()
        payload = json.dumps(data, ensure_ascii=False, default=_json_default)
        await self._db.execute(
            """INSERT INTO documents (collection, id, data, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(collection, id) DO UPDATE SET data=?, updated_at=?""",
            (collection, doc_id, payload, now, payload, now),
        )
        await self._db.commit()

    async def _find(
        self, collection: str, field_name: str, value: Any
    ) -> tuple[str, dict[str, Any]] | None:
        assert self._db
        cursor = await self._db.execute(
            """SELECT id, data FROM documents
               WHERE collection = ? AND json_extract(data, ?) = ?
               ORDER BY rowid LIMIT 1""",
            (collection, f"$.{field_name}", value),
        )
        row = await cursor.fetchone()
        return (row["id"], json.loads(row["data"])) if row else None

    async def _scan(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        assert self._db
        cursor = await self._db.execute(
            "SELECT id, data FROM documents WHERE collection = ? ORDER BY rowid",
            (collection,),
        )
        rows = await cursor.fetchall()
        return [(r["id"], json.loads(r["data"])) for r in rows]


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

