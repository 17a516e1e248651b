"""
tests/test_event_store.py — pytest tests for plany.store.event_store.EventStore.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import List

import pytest

from conftest import food_placeholder
from plany.core.constants import EntryKind, EntryStatus
from plany.core.errors import DuplicateIdError, EntryNotFoundError
from plany.store.event_store import EventStore
from plany.store.models import (
    FoodAttributes,
    HydrationAttributes,
    LogEntry,
    new_entry_id,
)
from plany.store.mutations import set_attributes_and_status, set_status

_T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _water(amount: float = 8.0, created_at: datetime = _T0) -> LogEntry:
    return LogEntry(
        id=new_entry_id(),
        kind=EntryKind.HYDRATION,
        created_at=created_at,
        primary_text=f"{amount:g} oz water",
        attributes=HydrationAttributes(amount=amount, unit="oz"),
        status=EntryStatus.ENRICHED,
    )


# ──────────────────────────────────────────────────────────────
# Insert / Get
# ──────────────────────────────────────────────────────────────

class TestInsertAndGet:

    def test_insert_then_get(self, store: EventStore) -> None:
        entry = food_placeholder()
        store.insert(entry)
        assert store.get(entry.id) is entry
        assert entry.id in store
        assert len(store) == 1

    def test_get_unknown_returns_none(self, store: EventStore) -> None:
        assert store.get("missing") is None
        assert "missing" not in store

    def test_duplicate_id_rejected(self, store: EventStore) -> None:
        entry = food_placeholder()
        store.insert(entry)
        with pytest.raises(DuplicateIdError) as exc_info:
            store.insert(replace(entry, primary_text="other"))
        assert exc_info.value.entry_id == entry.id
        assert store.get(entry.id).primary_text == entry.primary_text


# ──────────────────────────────────────────────────────────────
# Update
# ──────────────────────────────────────────────────────────────

class TestUpdate:

    def test_update_returns_new_value(self, store: EventStore) -> None:
        entry = food_placeholder()
        store.insert(entry)
        attrs = FoodAttributes(calories=105, protein=1, carbs=27, fat=0)
        updated = store.update(entry.id, set_attributes_and_status(attrs, EntryStatus.ENRICHED, "done"))
        assert updated.attributes == attrs
        assert updated.status is EntryStatus.ENRICHED
        assert updated.notes == "done"
        assert store.get(entry.id) == updated

    def test_set_status_keeps_notes_when_not_given(self, store: EventStore) -> None:
        entry = food_placeholder()
        store.insert(entry)
        updated = store.update(entry.id, set_status(EntryStatus.ENRICHING))
        assert updated.status is EntryStatus.ENRICHING
        assert updated.notes == entry.notes

    def test_update_unknown_raises(self, store: EventStore) -> None:
        with pytest.raises(EntryNotFoundError):
            store.update("missing", set_status(EntryStatus.FAILED))

    @pytest.mark.parametrize("field, value", [
        ("id", "another-id"),
        ("kind", EntryKind.SYMPTOM),
        ("created_at", _T0 + timedelta(hours=1)),
    ])
    def test_mutator_may_not_change_identity(self, store: EventStore, field: str, value) -> None:
        entry = _water()
        store.insert(entry)
        if field == "kind":
            # Bypass __post_init__ so the identity check itself is exercised.
            mutated = replace(entry)
            object.__setattr__(mutated, "kind", value)
            mutator = lambda _e: mutated  # noqa: E731
        else:
            mutator = lambda e: replace(e, **{field: value})  # noqa: E731
        with pytest.raises(ValueError):
            store.update(entry.id, mutator)
        assert store.get(entry.id) == entry

    def test_concurrent_updates_are_not_lost(self, store: EventStore) -> None:
        """50 threads each add one calorie; all 50 increments must land."""
        entry = food_placeholder()
        store.insert(entry)
        barrier = threading.Barrier(50)

        def _bump() -> None:
            barrier.wait()
            store.update(
                entry.id,
                lambda e: replace(e, attributes=replace(e.attributes, calories=e.attributes.calories + 1)),
            )

        threads = [threading.Thread(target=_bump) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5.0)

        assert store.get(entry.id).attributes.calories == 50


# ──────────────────────────────────────────────────────────────
# Observers
# ──────────────────────────────────────────────────────────────

class TestObservers:

    def test_observer_sees_insert_and_update(self, store: EventStore) -> None:
        seen: List[tuple] = []
        store.subscribe(lambda entry_id, entry: seen.append((entry_id, entry.status)))
        entry = food_placeholder()
        store.insert(entry)
        store.update(entry.id, set_status(EntryStatus.ENRICHING))
        assert seen == [(entry.id, EntryStatus.PLACEHOLDER), (entry.id, EntryStatus.ENRICHING)]

    def test_failing_observer_does_not_break_writer(self, store: EventStore) -> None:
        seen: List[str] = []

        def _boom(entry_id, entry):
            raise RuntimeError("observer failure")

        store.subscribe(_boom)
        store.subscribe(lambda entry_id, entry: seen.append(entry_id))
        entry = food_placeholder()
        store.insert(entry)
        assert seen == [entry.id]

    def test_unsubscribe(self, store: EventStore) -> None:
        seen: List[str] = []
        unsubscribe = store.subscribe(lambda entry_id, entry: seen.append(entry_id))
        unsubscribe()
        unsubscribe()
        store.insert(food_placeholder())
        assert seen == []

    def test_per_entry_notifications_in_order(self, store: EventStore) -> None:
        entry = food_placeholder()
        seen: List[int] = []
        store.subscribe(lambda entry_id, e: seen.append(e.attributes.calories))
        store.insert(entry)

        def _set(n: int):
            return lambda e: replace(e, attributes=replace(e.attributes, calories=n))

        threads = [threading.Thread(target=store.update, args=(entry.id, _set(n))) for n in range(1, 21)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5.0)

        # Last notification matches the stored value.
        assert seen[-1] == store.get(entry.id).attributes.calories
        assert len(seen) == 21


# ──────────────────────────────────────────────────────────────
# Queries
# ──────────────────────────────────────────────────────────────

class TestQueries:

    def test_list_newest_first(self, store: EventStore) -> None:
        older = food_placeholder("toast", created_at=_T0)
        newer = food_placeholder("eggs", created_at=_T0 + timedelta(hours=2))
        store.insert(older)
        store.insert(newer)
        assert [e.id for e in store.list()] == [newer.id, older.id]

    def test_list_filters(self, store: EventStore) -> None:
        food = food_placeholder(created_at=_T0)
        water = _water(created_at=_T0 + timedelta(hours=1))
        store.insert(food)
        store.insert(water)
        assert [e.id for e in store.list(kind=EntryKind.HYDRATION)] == [water.id]
        assert [e.id for e in store.list(since=_T0 + timedelta(minutes=30))] == [water.id]
        assert store.list(kind=EntryKind.SYMPTOM) == []

    def test_list_is_a_snapshot(self, store: EventStore) -> None:
        store.insert(food_placeholder())
        snapshot = store.list()
        store.insert(food_placeholder())
        assert len(snapshot) == 1

    def test_summary(self, store: EventStore) -> None:
        enriched = food_placeholder("banana", created_at=_T0)
        pending = food_placeholder("toast", created_at=_T0)
        failed = food_placeholder("mystery", created_at=_T0)
        yesterday = food_placeholder("pizza", created_at=_T0 - timedelta(days=1))
        for e in (enriched, pending, failed, yesterday):
            store.insert(e)
        store.insert(_water(created_at=_T0))
        store.update(enriched.id, set_attributes_and_status(
            FoodAttributes(calories=105, protein=1, carbs=27, fat=0), EntryStatus.ENRICHED,
        ))
        store.update(failed.id, set_status(EntryStatus.FAILED))

        summary = store.summary(date(2024, 1, 1))

        assert summary["date"] == "2024-01-01"
        assert summary["counts"] == {"FOOD": 3, "HYDRATION": 1, "SUPPLEMENT": 0, "SYMPTOM": 0}
        assert summary["calories"] == 105
        assert summary["pending"] == 1
