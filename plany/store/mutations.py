"""
plany/store/mutations.py — Pure entry transformations for ``EventStore.update``.

Each factory returns a function ``LogEntry -> LogEntry``. None of them reads
anything but its argument, so the store can apply them under its per-key lock.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, Optional

from plany.core.constants import EntryStatus
from plany.store.models import Attributes, LogEntry

Mutator = Callable[[LogEntry], LogEntry]


def set_status(status: EntryStatus, notes: Optional[str] = None) -> Mutator:
    """Change status (and optionally notes), leaving attributes untouched."""

    def _apply(entry: LogEntry) -> LogEntry:
        if notes is None:
            return replace(entry, status=status)
        return replace(entry, status=status, notes=notes)

    return _apply


def set_attributes_and_status(
    attributes: Attributes,
    status: EntryStatus,
    notes: Optional[str] = None,
) -> Mutator:
    """Replace attributes and status together in one write."""

    def _apply(entry: LogEntry) -> LogEntry:
        changes = {"attributes": attributes, "status": status}
        if notes is not None:
            changes["notes"] = notes
        return replace(entry, **changes)

    return _apply
