"""Snapshot codec: AppDataset <-> timestamped JSON objects on the remote store.

Filename grammar (shared with every installation reading the same share)::

    bookmarks_<kind>_<YYYY-MM-DD>_<unixMillis>.json

``kind`` is ``sync`` for automatic snapshots and ``backup`` for manual ones.
The timestamp is the trailing run of digits before ``.json``, preceded by
``_`` or ``-``; the date part is informational only.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable

from pydantic import ValidationError

from andytab.core.errors import ParseFailedError
from andytab.core.models import AppDataset

logger = logging.getLogger(__name__)

FILENAME_PREFIX = "bookmarks_"
TIMESTAMP_PATTERN = re.compile(r"[_-](\d+)\.json$")


class SnapshotKind(str, Enum):
    SYNC = "sync"
    BACKUP = "backup"

    @property
    def prefix(self) -> str:
        return f"{FILENAME_PREFIX}{self.value}"


@dataclass(frozen=True)
class EncodedSnapshot:
    """A serialized dataset ready for upload."""

    filename: str
    body: str
    timestamp: int


def extract_timestamp(filename: str) -> int | None:
    """Return the millisecond timestamp embedded in a snapshot filename."""
    match = TIMESTAMP_PATTERN.search(filename)
    return int(match.group(1)) if match else None


def snapshot_filename(kind: SnapshotKind, timestamp: int) -> str:
    date_str = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
    return f"{kind.prefix}_{date_str}_{timestamp}.json"


def is_sync_snapshot(name: str) -> bool:
    return name.startswith(SnapshotKind.SYNC.prefix) and extract_timestamp(name) is not None


def is_backup_snapshot(name: str) -> bool:
    return name.startswith(SnapshotKind.BACKUP.prefix) and extract_timestamp(name) is not None


def latest_sync_snapshot(names: Iterable[str]) -> str | None:
    """Pick the newest sync snapshot (greatest name) or None if there is none."""
    candidates = [name for name in names if is_sync_snapshot(name)]
    return max(candidates) if candidates else None


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


class SnapshotCodec:
    """Encodes and decodes dataset snapshots.

    Timestamps handed out by one codec are strictly increasing, even when
    two encodes land in the same millisecond.
    """

    def __init__(self, clock: Callable[[], int] | None = None):
        """
        Args:
            clock: Returns the current time in Unix milliseconds
        """
        self._clock = clock or _now_millis
        self._last_timestamp = 0

    def next_timestamp(self) -> int:
        timestamp = self._clock()
        if timestamp <= self._last_timestamp:
            timestamp = self._last_timestamp + 1
        self._last_timestamp = timestamp
        return timestamp

    def encode(self, dataset: AppDataset, kind: SnapshotKind = SnapshotKind.SYNC) -> EncodedSnapshot:
        """Serialize every dataset field under a freshly timestamped filename."""
        timestamp = self.next_timestamp()
        body = json.dumps(dataset.to_wire(), ensure_ascii=False, indent=2)
        return EncodedSnapshot(
            filename=snapshot_filename(kind, timestamp),
            body=body,
            timestamp=timestamp,
        )

    @staticmethod
    def decode(filename: str, body: str | bytes) -> AppDataset:
        """
        Parse and validate a snapshot body.

        Raises:
            ParseFailedError: If the body is not a valid serialized dataset
        """
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseFailedError(f"Snapshot {filename} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ParseFailedError(f"Snapshot {filename} does not contain a JSON object")

        try:
            return AppDataset.from_wire(data)
        except ValidationError as e:
            raise ParseFailedError(f"Snapshot {filename} failed validation: {e}") from e
