"""
plany/store/snapshot.py — Optional JSON file backing for the Event Store.

The store itself stays in memory. :func:`attach` loads a snapshot into it once
at startup and then rewrites the whole file after every insert or update.
Each write goes to a temporary file in the same directory and is moved into
place with ``os.replace``, so readers never see a half-written snapshot.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, List

from plany.core.errors import ConfigurationError, DuplicateIdError
from plany.store.event_store import EventStore
from plany.store.models import LogEntry

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 1


class SnapshotFile:
    """
    One JSON file holding every entry of a store.

    Layout: ``{"version": 1, "entries": [LogEntry.to_dict(), ...]}``.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> List[LogEntry]:
        """
        Read the entries stored in the file; a missing file holds none.

        Raises:
            ConfigurationError: If the file exists but is not a valid snapshot.
        """
        if not self._path.exists():
            logger.info("No snapshot at %s — starting empty", self._path)
            return []
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
            entries = [LogEntry.from_dict(raw) for raw in data["entries"]]
        except (OSError, KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Unreadable snapshot {self._path}: {exc}") from exc
        logger.info("Loaded %d entries from %s", len(entries), self._path)
        return entries

    def save(self, store: EventStore) -> None:
        """Write the current contents of *store* to the file."""
        with self._lock:
            # Read under the lock so a slower writer cannot overwrite a newer state.
            payload = {
                "version": _FORMAT_VERSION,
                "entries": [entry.to_dict() for entry in store.list()],
            }
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}-", suffix=".tmp",
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, ensure_ascii=False)
                os.replace(tmp, self._path)
            except Exception:
                os.unlink(tmp)
                raise
        logger.debug("Saved %d entries to %s", len(payload["entries"]), self._path)


def attach(store: EventStore, snapshot: SnapshotFile) -> Callable[[], None]:
    """
    Restore *snapshot* into *store*, then save it after every store write.

    Entries whose id is already in *store* are skipped.

    Returns:
        Callable that stops the saving.

    Raises:
        ConfigurationError: If the snapshot file cannot be read.
    """
    restored = 0
    for entry in snapshot.load():
        try:
            store.insert(entry)
        except DuplicateIdError:
            logger.warning("Snapshot entry %s already in store — skipped", entry.id)
            continue
        restored += 1

    def _on_change(_entry_id: str, _entry: LogEntry) -> None:
        snapshot.save(store)

    unsubscribe = store.subscribe(_on_change)
    logger.info("Snapshot %s attached (%d entries restored)", snapshot.path, restored)
    return unsubscribe
