"""
plany/store/event_store.py — The single authoritative store of log entries.

One instance per process, constructed at startup and passed by reference to
the pipeline controller, the task orchestrator and the presentation layer.

Concurrency model:

- ``_lock`` guards the entry dict and the per-key lock table; it is only
  held for dict reads/writes, never while a mutator or observer runs.
- Each entry id has its own lock. ``update`` holds it across read → mutate →
  write → notify, so concurrent updates of one id serialise and observers see
  that id's changes in order. Different ids proceed independently.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from plany.core.constants import EntryKind, EntryStatus
from plany.core.errors import DuplicateIdError, EntryNotFoundError
from plany.store.models import FoodAttributes, LogEntry
from plany.store.mutations import Mutator

logger = logging.getLogger(__name__)

#: Observer signature: ``(entry_id, new_value)``.
ChangeObserver = Callable[[str, LogEntry], None]


class EventStore:
    """
    Thread-safe in-memory collection of :class:`LogEntry` records.

    ``insert`` and ``update`` are the only write paths. After each successful
    write every registered observer is called with ``(id, new_value)``;
    observer exceptions are logged and never reach the writer.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, LogEntry] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._observers: List[ChangeObserver] = []
        self._observers_lock = threading.Lock()
        logger.info("EventStore created (id=%#x)", id(self))

    # ──────────────────────────────────────────
    # Writes
    # ──────────────────────────────────────────

    def insert(self, entry: LogEntry) -> None:
        """
        Add a new entry.

        Raises:
            DuplicateIdError: If an entry with ``entry.id`` already exists.
        """
        with self._lock:
            if entry.id in self._entries:
                raise DuplicateIdError(entry.id)
            key_lock = threading.Lock()
            self._key_locks[entry.id] = key_lock
            # Hold the key lock before publishing so no update can slip in
            # between the insert and its notification.
            key_lock.acquire()
            self._entries[entry.id] = entry
        try:
            logger.debug("Inserted %s entry %s", entry.kind.value, entry.id)
            self._notify(entry.id, entry)
        finally:
            key_lock.release()

    def update(self, entry_id: str, mutator: Mutator) -> LogEntry:
        """
        Atomically read, transform and write back one entry.

        Args:
            entry_id: Id of the entry to change.
            mutator: Pure function ``LogEntry -> LogEntry``.

        Returns:
            The new stored value.

        Raises:
            EntryNotFoundError: If no entry has this id.
            ValueError: If the mutator changed ``id``, ``kind`` or ``created_at``.
        """
        with self._lock:
            key_lock = self._key_locks.get(entry_id)
        if key_lock is None:
            raise EntryNotFoundError(entry_id)

        with key_lock:
            with self._lock:
                current = self._entries.get(entry_id)
            if current is None:
                raise EntryNotFoundError(entry_id)

            updated = mutator(current)
            if (
                updated.id != current.id
                or updated.kind is not current.kind
                or updated.created_at != current.created_at
            ):
                raise ValueError(
                    f"Mutator may not change id, kind or created_at of {entry_id}"
                )

            with self._lock:
                self._entries[entry_id] = updated
            self._notify(entry_id, updated)
        return updated

    # ──────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────

    def get(self, entry_id: str) -> Optional[LogEntry]:
        """Return the current value for *entry_id*, or ``None``."""
        with self._lock:
            return self._entries.get(entry_id)

    def list(
        self,
        kind: Optional[EntryKind] = None,
        since: Optional[datetime] = None,
    ) -> List[LogEntry]:
        """
        Return a snapshot of entries, newest first.

        Args:
            kind: Only entries of this kind.
            since: Only entries created at or after this time.
        """
        with self._lock:
            entries = list(self._entries.values())
        if kind is not None:
            entries = [e for e in entries if e.kind is kind]
        if since is not None:
            entries = [e for e in entries if e.created_at >= since]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries

    def summary(self, day: date) -> Dict[str, object]:
        """
        Summarise one calendar day (in each entry's own timezone).

        Returns:
            Dict with per-kind ``counts``, resolved ``calories`` from enriched
            FOOD entries, and ``pending`` (FOOD entries not yet resolved).
        """
        todays = [e for e in self.list() if e.created_at.date() == day]
        counts = Counter(e.kind.value for e in todays)
        calories = 0
        pending = 0
        for entry in todays:
            if entry.kind is not EntryKind.FOOD:
                continue
            if entry.status is EntryStatus.ENRICHED and isinstance(entry.attributes, FoodAttributes):
                calories += entry.attributes.calories
            elif entry.status in (EntryStatus.PLACEHOLDER, EntryStatus.ENRICHING):
                pending += 1
        return {
            "date": day.isoformat(),
            "counts": {k.value: counts.get(k.value, 0) for k in EntryKind},
            "calories": calories,
            "pending": pending,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        with self._lock:
            return entry_id in self._entries

    # ──────────────────────────────────────────
    # Observers
    # ──────────────────────────────────────────

    def subscribe(self, observer: ChangeObserver) -> Callable[[], None]:
        """
        Register *observer* for change notifications.

        Returns:
            A zero-argument function that unregisters the observer.
        """
        with self._observers_lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._observers_lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return _unsubscribe

    def _notify(self, entry_id: str, entry: LogEntry) -> None:
        with self._observers_lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(entry_id, entry)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Store observer raised for %s: %s", entry_id, exc)

    def __repr__(self) -> str:
        return f"EventStore(id={id(self):#x}, entries={len(self)})"
