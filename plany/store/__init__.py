"""
store — The single authoritative Event Store and its record types.

Every mutation of a :class:`~plany.store.models.LogEntry` goes through
:meth:`~plany.store.event_store.EventStore.update`.
"""

from plany.store.event_store import EventStore
from plany.store.models import LogEntry

__all__ = ["EventStore", "LogEntry"]
