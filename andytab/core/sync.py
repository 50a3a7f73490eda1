"""Core synchronization logic for the local dataset ↔ WebDAV snapshots."""

import asyncio
import contextlib
import inspect
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

import aiofiles
import httpx

from andytab.core.config import AppConfig
from andytab.core.conflict import merge_datasets
from andytab.core.errors import AndyTabError, ConfigInvalidError
from andytab.core.models import AppDataset, Resolution, StartupAction, SyncState
from andytab.core.snapshot import (
    FILENAME_PREFIX,
    SnapshotCodec,
    SnapshotKind,
    extract_timestamp,
    is_sync_snapshot,
    latest_sync_snapshot,
    snapshot_filename,
)
from andytab.core.storage import SYNCABLE_KEYS, LocalDataStore, StorageChange
from andytab.sources.webdav import RemoteEntry, WebDAVClient

logger = logging.LoggerAdapter(logging.getLogger(__name__), {"log_category": "sync"})

DEFAULT_DEBOUNCE_SECONDS = 3.0

ReloadCallback = Callable[[], Awaitable[None] | None]


@dataclass
class ConflictInfo:
    """A divergence between the local replica and the newest cloud snapshot."""

    snapshot_name: str
    local_timestamp: int
    cloud_timestamp: int


@dataclass
class StartupCheckResult:
    action: StartupAction
    snapshot_name: str | None = None
    local_timestamp: int | None = None
    cloud_timestamp: int | None = None
    error: AndyTabError | None = None


@dataclass
class UploadResult:
    filename: str
    timestamp: int
    pruned: list[str] = field(default_factory=list)


@dataclass
class DownloadResult:
    filename: str
    timestamp: int | None
    reload_required: bool = True


class SyncEngine:
    """
    Reconciles the local data store with a single remote sync snapshot.

    Brings together:
    - LocalDataStore (source of the local dataset and of change events)
    - WebDAVClient (remote snapshot directory)
    - SnapshotCodec (filenames and bodies)

    Sync Algorithm:
    1. On startup, compare the persisted last-sync timestamp with the
       timestamp embedded in the newest remote sync snapshot
    2. A strictly newer (or first-seen) cloud snapshot is downloaded and
       applied outright; equal timestamps are a no-op; anything else waits
       for a human decision (keep local, keep cloud, or merge)
    3. Local edits to syncable keys schedule a debounced upload; each upload
       writes a new snapshot and prunes all older sync snapshots

    Downloads ask the host to reload through ``on_reload_required``; the
    engine never retries a failed transfer on its own.
    """

    def __init__(
        self,
        store: LocalDataStore,
        client: WebDAVClient | None,
        codec: SnapshotCodec | None = None,
        remote_dir: str = "AndyTab",
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        on_reload_required: ReloadCallback | None = None,
        enabled: bool = True,
        startup_check_enabled: bool = True,
    ):
        """
        Initialize the sync engine.

        Args:
            store: Local data store
            client: WebDAV client, or None when sync is not configured
            codec: Snapshot codec (a fresh one by default)
            remote_dir: Directory under the WebDAV base URL holding snapshots
            debounce_seconds: Quiet period before a scheduled upload runs
            on_reload_required: Called after local data was replaced by a download
            enabled: When False, local edits never schedule uploads and the
                startup check is skipped
            startup_check_enabled: When False, the startup check only runs when forced
        """
        self.store = store
        self.client = client
        self.codec = codec or SnapshotCodec()
        self.remote_dir = remote_dir.strip("/")
        self.debounce_seconds = debounce_seconds
        self.on_reload_required = on_reload_required
        self.enabled = enabled
        self.startup_check_enabled = startup_check_enabled

        self._state = SyncState.IDLE
        self._conflict: ConflictInfo | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._suppress_depth = 0
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._debounced_task: asyncio.Task | None = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        store: LocalDataStore,
        on_reload_required: ReloadCallback | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "SyncEngine":
        """Build an engine; the WebDAV client is omitted when no URL is configured."""
        client = None
        if config.webdav.is_configured:
            client = WebDAVClient.from_config(config.webdav, transport=transport)
        return cls(
            store,
            client,
            remote_dir=config.webdav.remote_dir,
            debounce_seconds=config.sync.debounce_seconds,
            on_reload_required=on_reload_required,
            enabled=config.sync.enabled,
            startup_check_enabled=config.sync.check_on_startup,
        )

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def pending_conflict(self) -> ConflictInfo | None:
        return self._conflict

    @property
    def has_pending_upload(self) -> bool:
        return self._debounce_handle is not None

    async def close(self) -> None:
        """Detach from the store, drop pending uploads and close the client."""
        self.detach()
        self.cancel_pending_upload()
        if self._debounced_task is not None and not self._debounced_task.done():
            await self._debounced_task
        if self.client is not None:
            await self.client.close()

    # Internal helpers

    def _set_state(self, state: SyncState) -> None:
        if state is not self._state:
            logger.debug("Sync state: %s -> %s", self._state.value, state.value)
            self._state = state

    def _settle_state(self) -> None:
        """Return to IDLE, or to the conflict prompt if one is still open."""
        if self._conflict is not None:
            self._set_state(SyncState.AWAITING_CONFLICT_RESOLUTION)
        else:
            self._set_state(SyncState.IDLE)

    def _require_client(self) -> WebDAVClient:
        if self.client is None:
            raise ConfigInvalidError("WebDAV is not configured")
        return self.client

    def _remote_path(self, name: str) -> str:
        return f"{self.remote_dir}/{name}" if self.remote_dir else name

    @contextlib.contextmanager
    def _suppressed_triggers(self):
        """Ignore store change events caused by the engine's own writes."""
        self._suppress_depth += 1
        try:
            yield
        finally:
            self._suppress_depth -= 1

    async def _request_reload(self) -> None:
        if self.on_reload_required is None:
            return
        try:
            result = self.on_reload_required()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Reload callback failed")

    async def _fetch_snapshot(self, name: str) -> AppDataset:
        client = self._require_client()
        body = await client.get(self._remote_path(name), timeout_ms=client.transfer_timeout_ms)
        return self.codec.decode(name, body)

    # Remote directory

    async def ensure_remote_directory(self) -> None:
        """Create the snapshot directory (an existing one is fine)."""
        if self.remote_dir:
            await self._require_client().create_directory(self.remote_dir)

    async def list_snapshots(self) -> list[RemoteEntry]:
        """List every sync snapshot and backup in the remote directory."""
        client = self._require_client()
        await self.ensure_remote_directory()
        entries = await client.list_directory(self.remote_dir)
        return [
            entry
            for entry in entries
            if not entry.is_directory and entry.name.startswith(FILENAME_PREFIX)
        ]

    async def get_latest_sync_snapshot(self) -> str | None:
        entries = await self.list_snapshots()
        return latest_sync_snapshot(entry.name for entry in entries)

    async def _prune_sync_snapshots(self, uploaded: str) -> list[str]:
        """Delete every sync snapshot except the newest one."""
        client = self._require_client()
        try:
            entries = await client.list_directory(self.remote_dir)
        except AndyTabError as e:
            logger.error("Failed to list snapshots for pruning: %s", e)
            return []

        names = sorted(entry.name for entry in entries if is_sync_snapshot(entry.name))
        if len(names) <= 1:
            return []

        newest = names[-1]
        if newest != uploaded:
            logger.warning("A newer sync snapshot %s exists than the one just uploaded (%s)", newest, uploaded)

        pruned = []
        for name in names[:-1]:
            try:
                await client.delete(self._remote_path(name))
                pruned.append(name)
                logger.debug("Deleted old sync snapshot: %s", name)
            except AndyTabError as e:
                logger.error("Failed to delete old sync snapshot %s: %s", name, e)
        return pruned

    # Startup check

    async def check_on_startup(self, force: bool = False) -> StartupCheckResult:
        """
        Compare local and cloud timestamps and act on the result.

        Skipped when sync is disabled, or when the startup check is switched
        off and ``force`` is not set.

        | local | cloud      | action                        |
        |-------|------------|-------------------------------|
        | none  | any        | download, overwrite, reload   |
        | T     | T' > T     | download, overwrite, reload   |
        | T     | T' == T    | nothing                       |
        | T     | T' < T     | wait for conflict resolution  |

        Failures are logged and reported as FAILED; they never raise, so the
        application keeps running on local data.
        """
        if self.client is None:
            logger.debug("WebDAV not configured, skipping startup sync check")
            return StartupCheckResult(StartupAction.SKIPPED)
        if not self.enabled:
            logger.info("Sync disabled, skipping startup sync check")
            return StartupCheckResult(StartupAction.SKIPPED)
        if not self.startup_check_enabled and not force:
            logger.info("Startup sync check switched off in configuration")
            return StartupCheckResult(StartupAction.SKIPPED)

        self._set_state(SyncState.CHECKING_ON_STARTUP)
        local_timestamp = None
        try:
            local_timestamp = await self.store.get_last_sync_timestamp()
            snapshot_name = await self.get_latest_sync_snapshot()

            if snapshot_name is None:
                logger.info("No sync snapshot in the cloud yet")
                self._settle_state()
                return StartupCheckResult(StartupAction.NONE, local_timestamp=local_timestamp)

            cloud_timestamp = extract_timestamp(snapshot_name)
            result = StartupCheckResult(
                StartupAction.NONE,
                snapshot_name=snapshot_name,
                local_timestamp=local_timestamp,
                cloud_timestamp=cloud_timestamp,
            )

            if local_timestamp is None or local_timestamp < cloud_timestamp:
                logger.info("Cloud snapshot is newer or no local sync record, downloading %s", snapshot_name)
                await self.download(snapshot_name)
                result.action = StartupAction.DOWNLOADED
                return result

            if local_timestamp == cloud_timestamp:
                logger.info("Local data and cloud snapshot are in sync")
                self._settle_state()
                return result

            logger.info(
                "Local timestamp %s differs from cloud timestamp %s, awaiting conflict resolution",
                local_timestamp,
                cloud_timestamp,
            )
            self._conflict = ConflictInfo(snapshot_name, local_timestamp, cloud_timestamp)
            self._settle_state()
            result.action = StartupAction.CONFLICT
            return result

        except AndyTabError as e:
            logger.error("Startup sync check failed: %s", e)
            self._settle_state()
            return StartupCheckResult(StartupAction.FAILED, local_timestamp=local_timestamp, error=e)

    # Upload / download

    async def upload(self) -> UploadResult:
        """
        Upload the full local dataset as a new sync snapshot.

        The local last-sync timestamp is only updated after the PUT succeeded.

        Raises:
            ConfigInvalidError: If WebDAV is not configured
            RemoteStoreError: If the directory or upload request fails
        """
        client = self._require_client()
        self._set_state(SyncState.UPLOADING)
        try:
            dataset = await self.store.load_dataset()
            snapshot = self.codec.encode(dataset)

            await self.ensure_remote_directory()
            await client.put(
                self._remote_path(snapshot.filename),
                snapshot.body,
                content_type="application/json",
                timeout_ms=client.transfer_timeout_ms,
            )
            logger.info("Sync data uploaded to cloud: %s", snapshot.filename)

            await self.store.set_last_sync_timestamp(snapshot.timestamp)
            self._conflict = None

            pruned = await self._prune_sync_snapshots(snapshot.filename)
            return UploadResult(snapshot.filename, snapshot.timestamp, pruned)
        except AndyTabError as e:
            logger.error("Failed to upload sync data: %s", e)
            raise
        finally:
            self._settle_state()

    async def download(self, name: str) -> DownloadResult:
        """
        Download a sync snapshot and overwrite the local dataset with it.

        The snapshot is fully parsed and validated before anything local is
        written. On success the host is asked to reload.

        Only sync snapshots carry a version marker; backups are applied with
        ``restore_backup`` instead.

        Raises:
            ConfigInvalidError: If WebDAV is not configured
            ValueError: If ``name`` is not a sync snapshot
            ParseFailedError: If the snapshot body is invalid (local data untouched)
            RemoteStoreError: If the download fails
        """
        self._require_client()
        if not is_sync_snapshot(name):
            raise ValueError(f"{name} is not a sync snapshot; use restore_backup for backups")
        self._set_state(SyncState.DOWNLOADING)
        try:
            dataset = await self._fetch_snapshot(name)

            self.cancel_pending_upload()
            with self._suppressed_triggers():
                await self.store.apply_dataset(dataset)

            timestamp = extract_timestamp(name)
            if timestamp is not None:
                await self.store.set_last_sync_timestamp(timestamp)
            self._conflict = None
            logger.info("Applied cloud sync data from %s", name)
        except AndyTabError as e:
            logger.error("Failed to download and apply sync data %s: %s", name, e)
            raise
        finally:
            self._settle_state()

        await self._request_reload()
        return DownloadResult(name, timestamp)

    # Conflict resolution

    async def resolve_conflict(self, resolution: Resolution) -> UploadResult | DownloadResult:
        """
        Apply the user's choice to the pending conflict.

        On failure the conflict stays open so the caller can retry.

        Raises:
            RuntimeError: If no conflict is awaiting resolution
        """
        if self._state is not SyncState.AWAITING_CONFLICT_RESOLUTION or self._conflict is None:
            raise RuntimeError("No sync conflict is awaiting resolution")

        conflict = self._conflict
        logger.info("Resolving sync conflict with %s using '%s'", conflict.snapshot_name, resolution.value)

        if resolution is Resolution.KEEP_LOCAL:
            return await self.upload()
        if resolution is Resolution.KEEP_REMOTE:
            return await self.download(conflict.snapshot_name)
        return await self._merge_and_upload(conflict)

    async def _merge_and_upload(self, conflict: ConflictInfo) -> UploadResult:
        self._set_state(SyncState.DOWNLOADING)
        try:
            cloud = await self._fetch_snapshot(conflict.snapshot_name)
            local = await self.store.load_dataset()
            merged = merge_datasets(local, cloud)

            self.cancel_pending_upload()
            with self._suppressed_triggers():
                await self.store.apply_dataset(merged)
        except AndyTabError as e:
            logger.error("Failed to merge with %s: %s", conflict.snapshot_name, e)
            raise
        finally:
            self._settle_state()

        result = await self.upload()
        await self._request_reload()
        return result

    # Debounced upload trigger

    def attach(self) -> Callable[[], None]:
        """
        Subscribe to syncable key changes in the store.

        Returns:
            Callable that detaches the engine again
        """
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(lambda key: key in SYNCABLE_KEYS, self._on_local_change)
        return self.detach

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_local_change(self, change: StorageChange) -> None:
        if self._suppress_depth:
            return
        logger.debug("Syncable key changed: %s", change.key)
        self.schedule_upload()

    def schedule_upload(self) -> None:
        """(Re)start the quiet period; the upload runs when it elapses."""
        if self.client is None:
            logger.debug("WebDAV not configured, skipping sync upload")
            return
        if not self.enabled:
            logger.debug("Sync disabled, not scheduling upload")
            return
        loop = asyncio.get_running_loop()
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = loop.call_later(self.debounce_seconds, self._start_debounced_upload)

    def cancel_pending_upload(self) -> bool:
        """Drop a scheduled upload that has not started yet."""
        if self._debounce_handle is None:
            return False
        self._debounce_handle.cancel()
        self._debounce_handle = None
        return True

    def _start_debounced_upload(self) -> None:
        self._debounce_handle = None
        self._debounced_task = asyncio.get_running_loop().create_task(self._run_debounced_upload())

    async def _run_debounced_upload(self) -> None:
        if self._state is SyncState.AWAITING_CONFLICT_RESOLUTION:
            logger.info("Sync conflict pending, not uploading local changes in the background")
            return
        try:
            await self.upload()
        except AndyTabError as e:
            # Retried implicitly on the next change or startup check
            logger.error("Background sync upload failed: %s", e)

    async def flush(self) -> None:
        """Run a scheduled upload now and wait for any background upload."""
        if self._debounced_task is not None and not self._debounced_task.done():
            await self._debounced_task
        if self.cancel_pending_upload():
            await self._run_debounced_upload()

    # Manual backups

    async def create_backup(self) -> str:
        """
        Upload the current dataset as a backup snapshot.

        Backups are never pruned and do not change the last-sync timestamp.

        Returns:
            Backup filename
        """
        client = self._require_client()
        dataset = await self.store.load_dataset()
        snapshot = self.codec.encode(dataset, SnapshotKind.BACKUP)
        await self.ensure_remote_directory()
        await client.put(
            self._remote_path(snapshot.filename),
            snapshot.body,
            content_type="application/json",
            timeout_ms=client.transfer_timeout_ms,
        )
        logger.info("Backup uploaded: %s", snapshot.filename)
        return snapshot.filename

    async def list_backups(self) -> list[RemoteEntry]:
        """List sync snapshots and backups, newest first."""
        entries = await self.list_snapshots()

        def sort_key(entry: RemoteEntry) -> tuple[bool, int, str]:
            timestamp = extract_timestamp(entry.name)
            return (timestamp is None, -(timestamp or 0), entry.name)

        return sorted(entries, key=sort_key)

    async def restore_backup(self, name: str) -> DownloadResult:
        """
        Replace local data with a backup or snapshot.

        The restore counts as a local edit, so it is picked up by the next
        debounced upload when the engine is attached.
        """
        dataset = await self._fetch_snapshot(name)
        await self.store.apply_dataset(dataset)
        logger.info("Restored backup %s", name)
        await self._request_reload()
        return DownloadResult(name, extract_timestamp(name))

    async def delete_backup(self, name: str) -> None:
        await self._require_client().delete(self._remote_path(name))
        logger.info("Deleted backup %s", name)

    async def export_local(self, destination: Path) -> Path:
        """
        Write the current dataset to a local JSON file.

        Args:
            destination: Target file, or a directory to create a backup-named file in

        Returns:
            Path of the written file
        """
        dataset = await self.store.load_dataset()
        if destination.is_dir():
            destination = destination / snapshot_filename(SnapshotKind.BACKUP, self.codec.next_timestamp())
        destination.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(destination, "w", encoding="utf-8") as f:
            await f.write(json.dumps(dataset.to_wire(), ensure_ascii=False, indent=2))
        logger.info("Exported local backup to %s", destination)
        return destination

    async def import_local(self, source: Path) -> list[str]:
        """
        Apply a local JSON backup file.

        Raises:
            ParseFailedError: If the file is not a valid backup (nothing is applied)

        Returns:
            Storage keys that were written
        """
        async with aiofiles.open(source, "r", encoding="utf-8") as f:
            body = await f.read()
        dataset = self.codec.decode(source.name, body)
        written = await self.store.apply_dataset(dataset)
        logger.info("Imported local backup from %s", source)
        await self._request_reload()
        return written

    async def status(self) -> dict:
        """Summarize local and cloud sync state."""
        info = {
            "configured": self.client is not None,
            "state": self._state.value,
            "local_timestamp": await self.store.get_last_sync_timestamp(),
            "latest_snapshot": None,
            "cloud_timestamp": None,
            "pending_upload": self.has_pending_upload,
        }
        if self.client is not None:
            latest = await self.get_latest_sync_snapshot()
            info["latest_snapshot"] = latest
            info["cloud_timestamp"] = extract_timestamp(latest) if latest else None
        return info
