"""Local data store with an offline mirror and change notifications."""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

import aiofiles
import aiosqlite
from pydantic import ValidationError

from andytab.core.config import AppConfig
from andytab.core.errors import LocalStoreError, ParseFailedError
from andytab.core.models import AppDataset
from andytab.utils.db import KeyValueDB

logger = logging.LoggerAdapter(logging.getLogger(__name__), {"log_category": "storage"})


class StorageKeys:
    """Persisted key names, shared with the browser extension."""

    SETTINGS = "andy_tab_settings"
    SHORTCUTS = "andy_tab_shortcuts"
    WEBDAV_CONFIG = "andy_tab_webdav_config"
    SEARCH_ENGINES = "andy_tab_search_engines"
    OFFLINE_CACHE = "andy_tab_offline_cache"
    TODOS = "andy_tab_todos"
    NOTES = "andy_tab_notes"
    SYNC_LAST_TIMESTAMP = "andy_tab_sync_lasttimestamp"
    USER_BOOKMARKS = "user_bookmarks"


# AppDataset field -> storage key, in the order fields are written on apply
FIELD_KEYS: dict[str, str] = {
    "shortcuts": StorageKeys.SHORTCUTS,
    "settings": StorageKeys.SETTINGS,
    "search_engines": StorageKeys.SEARCH_ENGINES,
    "todos": StorageKeys.TODOS,
    "notes": StorageKeys.NOTES,
    "webdav_config": StorageKeys.WEBDAV_CONFIG,
    "bookmarks": StorageKeys.USER_BOOKMARKS,
}

# Keys whose mutation schedules an upload. Never includes the sync timestamp.
SYNCABLE_KEYS: frozenset[str] = frozenset(
    {
        StorageKeys.SHORTCUTS,
        StorageKeys.SETTINGS,
        StorageKeys.SEARCH_ENGINES,
        StorageKeys.TODOS,
        StorageKeys.NOTES,
        StorageKeys.USER_BOOKMARKS,
    }
)

_BACKEND_ERRORS = (aiosqlite.Error, OSError)


@dataclass
class StorageChange:
    """A single key mutation delivered to subscribers."""

    key: str
    old_value: Any
    new_value: Any


ChangeHandler = Callable[[StorageChange], Awaitable[None] | None]
KeyPredicate = Callable[[str], bool]


class LocalDataStore:
    """
    Key-value persistence for the local AndyTab dataset.

    Reads and writes go to the SQLite backend. Every value observed through
    ``get`` or written through ``set`` is also kept in an in-memory mirror
    that is persisted to its own JSON file, so a value is still available
    when the backend is transiently unreachable.

    Writes to the same key are serialized; writes to different keys are not.
    """

    def __init__(self, db: KeyValueDB, mirror_path: Path | None = None):
        """
        Args:
            db: Backend key-value database
            mirror_path: JSON file holding the offline mirror (None keeps it in memory only)
        """
        self.db = db
        self.mirror_path = mirror_path
        self._mirror: dict[str, Any] = {}
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._mirror_lock = asyncio.Lock()
        self._subscribers: list[tuple[KeyPredicate, ChangeHandler]] = []

    @classmethod
    def from_config(cls, config: AppConfig) -> "LocalDataStore":
        return cls(KeyValueDB(config.store_db_path), config.offline_cache_path)

    async def initialize(self) -> None:
        """Create the backend schema and load the persisted offline mirror."""
        try:
            await self.db.initialize()
        except _BACKEND_ERRORS as e:
            logger.warning("Local store backend unavailable, continuing on offline mirror: %s", e)
        await self._load_mirror()
        logger.info("Local data store initialized")

    # Offline mirror

    async def _load_mirror(self) -> None:
        if self.mirror_path is None or not self.mirror_path.exists():
            return
        try:
            async with aiofiles.open(self.mirror_path, "r", encoding="utf-8") as f:
                content = await f.read()
            data = json.loads(content) if content.strip() else {}
            self._mirror = data if isinstance(data, dict) else {}
            logger.debug("Loaded offline mirror with %d keys", len(self._mirror))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load offline mirror: %s", e)
            self._mirror = {}

    async def _save_mirror(self) -> None:
        if self.mirror_path is None:
            return
        async with self._mirror_lock:
            try:
                self.mirror_path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(self.mirror_path, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(self._mirror, ensure_ascii=False))
            except OSError as e:
                logger.error("Failed to save offline mirror: %s", e)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    # Key-value access

    async def get(self, key: str, default: Any = None) -> Any:
        """
        Get the value stored for a key.

        Falls back to the offline mirror when the backend has no value or
        cannot be read, and to ``default`` when neither has one.
        """
        try:
            raw = await self.db.get(key)
            value = json.loads(raw) if raw is not None else None
        except (*_BACKEND_ERRORS, json.JSONDecodeError) as e:
            logger.warning("Failed to read %s, using offline mirror: %s", key, e)
            return copy.deepcopy(self._mirror.get(key, default))

        if raw is None:
            return copy.deepcopy(self._mirror.get(key, default))

        if key not in self._mirror or self._mirror[key] != value:
            self._mirror[key] = copy.deepcopy(value)
            await self._save_mirror()
        return value

    async def set(self, key: str, value: Any) -> None:
        """
        Store a JSON-serializable value and notify subscribers.

        Raises:
            LocalStoreError: If the value cannot be serialized or the backend write fails
        """
        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise LocalStoreError(f"Value for {key} is not JSON-serializable: {e}") from e
        new_value = json.loads(payload)

        async with self._lock_for(key):
            old_value = copy.deepcopy(self._mirror.get(key))
            try:
                await self.db.set(key, payload)
            except _BACKEND_ERRORS as e:
                logger.error(f"Failed to save data ({key}): {e}")
                raise LocalStoreError(f"Failed to save {key}: {e}") from e
            self._mirror[key] = copy.deepcopy(new_value)
            await self._save_mirror()

        if old_value != new_value:
            await self._emit(StorageChange(key, old_value, new_value))

    # Change notifications

    def subscribe(self, predicate: KeyPredicate, handler: ChangeHandler) -> Callable[[], None]:
        """
        Register a change handler for keys accepted by ``predicate``.

        Returns:
            Callable that removes the subscription
        """
        entry = (predicate, handler)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def _emit(self, change: StorageChange) -> None:
        for predicate, handler in list(self._subscribers):
            if not predicate(change.key):
                continue
            try:
                result = handler(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Change handler failed for %s", change.key)

    async def ingest_external_changes(self, changes: Iterable[StorageChange]) -> None:
        """Mirror and fan out mutations made by another process on the same backend."""
        changes = list(changes)
        for change in changes:
            self._mirror[change.key] = copy.deepcopy(change.new_value)
        if changes:
            await self._save_mirror()
        for change in changes:
            await self._emit(change)

    # Sync bookkeeping

    async def get_last_sync_timestamp(self) -> int | None:
        value = await self.get(StorageKeys.SYNC_LAST_TIMESTAMP)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return int(value)

    async def set_last_sync_timestamp(self, timestamp: int) -> None:
        await self.set(StorageKeys.SYNC_LAST_TIMESTAMP, timestamp)

    # Whole-dataset access

    async def load_dataset(self) -> AppDataset:
        """
        Gather every dataset category from the store, substituting defaults.

        Raises:
            ParseFailedError: If the stored data does not form a valid dataset
        """
        data = {
            "shortcuts": await self.get(StorageKeys.SHORTCUTS, []),
            "settings": await self.get(StorageKeys.SETTINGS, {}),
            "searchEngines": await self.get(StorageKeys.SEARCH_ENGINES, {}),
            "todos": await self.get(StorageKeys.TODOS, []),
            "notes": await self.get(StorageKeys.NOTES, ""),
            "webdavConfig": await self.get(StorageKeys.WEBDAV_CONFIG),
            "bookmarks": await self.get(StorageKeys.USER_BOOKMARKS),
        }
        try:
            return AppDataset.model_validate(data)
        except ValidationError as e:
            raise ParseFailedError(f"Local dataset is invalid: {e}") from e

    async def apply_dataset(self, dataset: AppDataset, include_webdav_config: bool = False) -> list[str]:
        """
        Overwrite every category present in ``dataset``.

        The WebDAV connection config is left alone unless explicitly requested,
        since the local copy is authoritative for its own connection.

        Returns:
            Storage keys that were written
        """
        wire = dataset.to_wire()
        written = []
        for field_name, key in FIELD_KEYS.items():
            if field_name not in dataset.model_fields_set:
                continue
            if field_name == "webdav_config" and not include_webdav_config:
                continue
            alias = AppDataset.model_fields[field_name].alias or field_name
            await self.set(key, wire[alias])
            written.append(key)
        logger.debug("Applied dataset fields: %s", ", ".join(written) or "none")
        return written
