"""
plany/store/models.py — Log entry record and its kind-specific attributes.

A :class:`LogEntry` is immutable; the Event Store replaces the stored
instance on every update, so readers always hold a consistent snapshot.
Attributes are a tagged union keyed by :class:`~plany.core.constants.EntryKind`.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

from plany.core.constants import C, EntryKind, EntryStatus


# ──────────────────────────────────────────────────────────────
# Attribute variants
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FoodAttributes:
    """
    Nutrition macros for a FOOD entry.

    All fields start at ``0``, the placeholder sentinel, and are unresolved
    until enrichment writes a real estimate together with ``ENRICHED``.

    Attributes:
        calories: Kilocalories for the described portion.
        protein: Grams of protein.
        carbs: Grams of carbohydrate.
        fat: Grams of fat.
    """

    calories: int = 0
    protein: int = 0
    carbs: int = 0
    fat: int = 0

    @classmethod
    def placeholder(cls) -> "FoodAttributes":
        return cls()


@dataclass(frozen=True)
class HydrationAttributes:
    """Volume of a drink."""

    amount: float
    unit: str


@dataclass(frozen=True)
class SupplementAttributes:
    """A vitamin or supplement intake."""

    name: str
    dosage: Optional[str] = None


@dataclass(frozen=True)
class SymptomAttributes:
    """Reported symptoms with severity on a 1–5 scale."""

    symptoms: Tuple[str, ...]
    severity: int = C.DEFAULT_SEVERITY


Attributes = Union[FoodAttributes, HydrationAttributes, SupplementAttributes, SymptomAttributes]

#: Exactly one attribute type per kind. Adding an EntryKind without an entry
#: here fails ``tests/test_models.py``.
ATTRIBUTE_TYPES: Dict[EntryKind, type] = {
    EntryKind.FOOD: FoodAttributes,
    EntryKind.HYDRATION: HydrationAttributes,
    EntryKind.SUPPLEMENT: SupplementAttributes,
    EntryKind.SYMPTOM: SymptomAttributes,
}

#: Kinds whose attributes are filled in asynchronously by the orchestrator.
REQUIRES_ENRICHMENT: frozenset = frozenset({EntryKind.FOOD})


def new_entry_id() -> str:
    """Return a fresh entry identifier."""
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
# LogEntry
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LogEntry:
    """
    One durable health log record.

    ``id``, ``kind`` and ``created_at`` never change after creation; all other
    fields change only through :meth:`~plany.store.event_store.EventStore.update`.

    Attributes:
        id: Unique identifier, the only key any mutation may use.
        kind: Tagged variant selecting the attribute type.
        created_at: When the observation happened (timezone-aware).
        primary_text: Human-readable description, e.g. ``"1 medium banana"``.
        attributes: Instance of ``ATTRIBUTE_TYPES[kind]``.
        status: Current lifecycle status.
        notes: Short status hint for the caller.
        components: Optional list of meal components from the extractor.
    """

    id: str
    kind: EntryKind
    created_at: datetime
    primary_text: str
    attributes: Attributes
    status: EntryStatus = EntryStatus.PLACEHOLDER
    notes: str = ""
    components: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        expected = ATTRIBUTE_TYPES[self.kind]
        if not isinstance(self.attributes, expected):
            raise TypeError(
                f"{self.kind.value} entry requires {expected.__name__}, "
                f"got {type(self.attributes).__name__}"
            )

    @property
    def is_resolved(self) -> bool:
        """True once attributes hold real values rather than placeholders."""
        return self.status is EntryStatus.ENRICHED

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation for the presentation layer and logs."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "created_at": self.created_at.isoformat(),
            "primary_text": self.primary_text,
            "attributes": asdict(self.attributes),
            "status": self.status.value,
            "notes": self.notes,
            "components": list(self.components),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        """
        Rebuild an entry from :meth:`to_dict` output.

        Raises:
            KeyError, TypeError, ValueError: If *data* is not a valid entry.
        """
        kind = EntryKind(data["kind"])
        attrs = dict(data["attributes"])
        if kind is EntryKind.SYMPTOM:
            attrs["symptoms"] = tuple(attrs.get("symptoms") or ())
        return cls(
            id=data["id"],
            kind=kind,
            created_at=datetime.fromisoformat(data["created_at"]),
            primary_text=data["primary_text"],
            attributes=ATTRIBUTE_TYPES[kind](**attrs),
            status=EntryStatus(data.get("status", EntryStatus.PLACEHOLDER.value)),
            notes=data.get("notes", ""),
            components=tuple(data.get("components") or ()),
        )
