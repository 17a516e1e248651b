"""
plany/intent/extractor.py — Turns a transcript into structured actions.

:class:`Action` is the validated unit the pipeline controller consumes; each
one becomes exactly one log entry. :class:`ChatActionExtractor` asks an
OpenAI-compatible model for a strict JSON list of actions and maps the
loggable ones onto :class:`Action`, dropping anything it cannot log.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from plany.core.clock import Clock, SystemClock
from plany.core.config import EnrichmentConfig
from plany.core.constants import EntryKind
from plany.core.errors import ExternalServiceError
from plany.enrichment.client import ChatCompletionsTransport

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Action contract
# ──────────────────────────────────────────────────────────────

class Action(BaseModel):
    """
    One loggable thing the user said.

    Attributes:
        kind: Which entry kind to create.
        description: Full human-readable text, quantity included
            (e.g. ``"one tiny walnut"``).
        quantity: Numeric amount where the kind has one (hydration).
        unit: Unit for *quantity*.
        components: Meal components, when the extractor lists them.
        timestamp: When it happened; ``None`` means now.
        severity: Symptom severity, 1–5.
        symptoms: Symptom names.
        dosage: Supplement dosage text.
    """

    model_config = ConfigDict(frozen=True)

    kind: EntryKind
    description: str = Field(min_length=1)
    quantity: Optional[float] = Field(default=None, ge=0)
    unit: Optional[str] = None
    components: List[str] = Field(default_factory=list)
    timestamp: Optional[datetime] = None
    severity: Optional[int] = Field(default=None, ge=1, le=5)
    symptoms: List[str] = Field(default_factory=list)
    dosage: Optional[str] = None


class Extractor(Protocol):
    """Raises :class:`~plany.core.errors.ExternalServiceError` on failure."""

    def extract(self, text: str) -> List[Action]:
        ...


# ──────────────────────────────────────────────────────────────
# Model reply shape
# ──────────────────────────────────────────────────────────────

class _RawDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    item: Optional[str] = None
    amount: Optional[str] = None
    unit: Optional[str] = None
    severity: Optional[str] = None
    mealType: Optional[str] = None
    symptoms: Optional[List[str]] = None
    vitaminName: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[str] = None
    dosage: Optional[str] = None


class _RawAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    confidence: float = Field(ge=0, le=1)
    details: _RawDetails


class _ActionsReply(BaseModel):
    actions: List[_RawAction]


_ACTION_TYPES = ["log_water", "log_food", "log_symptom", "log_vitamin", "unknown"]

_DETAIL_FIELDS = [
    "item", "amount", "unit", "severity", "mealType",
    "vitaminName", "notes", "timestamp", "dosage",
]

_ACTIONS_SCHEMA = {
    "type": "object",
    "properties": {
        "actions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": _ACTION_TYPES},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "details": {
                        "type": "object",
                        "properties": {
                            **{name: {"type": "string"} for name in _DETAIL_FIELDS},
                            "symptoms": {"type": "array", "items": {"type": "string"}},
                        },
                        "required": [],
                        "additionalProperties": False,
                    },
                },
                "required": ["type", "confidence", "details"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["actions"],
    "additionalProperties": False,
}

_SYSTEM_MESSAGE = "You extract health log actions from short voice transcripts."

_PROMPT_TEMPLATE = """Extract every loggable action from: "{text}"

Current timestamp: {now}

Types: log_water, log_food, log_symptom, log_vitamin, unknown.
1. Always include "timestamp" (ISO 8601). Resolve "this morning", "at 2pm",
   "yesterday" relative to the current timestamp; no time means now.
2. log_food: put the FULL description with quantity and size in "item"
   ("one tiny walnut", not "walnut"). One action per food item.
3. log_water: put "amount" and "unit" in details.
4. log_vitamin: put the supplement name in "vitaminName", dosage if said.
5. log_symptom: put the list in "symptoms", severity 1-5 if said.
Return only the JSON object."""

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


def _parse_number(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = _NUMBER_RE.search(text)
    return float(match.group()) if match else None


def _parse_timestamp(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable action timestamp %r", text)
        return None


def _parse_severity(text: Optional[str]) -> Optional[int]:
    value = _parse_number(text)
    if value is None:
        return None
    return min(5, max(1, int(round(value))))


def to_action(raw: _RawAction) -> Optional[Action]:
    """
    Map one model action onto :class:`Action`.

    Returns:
        ``None`` for types that are not logged here (``unknown`` and the
        like) or when the details are too incomplete to log.
    """
    d = raw.details
    when = _parse_timestamp(d.timestamp)

    if raw.type == "log_food":
        if not d.item:
            return None
        return Action(kind=EntryKind.FOOD, description=d.item.strip(), timestamp=when)

    if raw.type == "log_water":
        quantity = _parse_number(d.amount)
        unit = d.unit if d.unit and d.unit.lower() != "water" else None
        if quantity is not None:
            description = f"{quantity:g} {unit or ''}".strip() + " water"
        else:
            description = "water"
        return Action(
            kind=EntryKind.HYDRATION,
            description=description,
            quantity=quantity,
            unit=unit,
            timestamp=when,
        )

    if raw.type == "log_vitamin":
        if not d.vitaminName:
            return None
        return Action(
            kind=EntryKind.SUPPLEMENT,
            description=d.vitaminName.strip(),
            dosage=d.dosage,
            timestamp=when,
        )

    if raw.type == "log_symptom":
        symptoms = [s.strip() for s in (d.symptoms or []) if s.strip()]
        description = ", ".join(symptoms) or (d.notes or "").strip()
        if not description:
            return None
        return Action(
            kind=EntryKind.SYMPTOM,
            description=description,
            symptoms=symptoms,
            severity=_parse_severity(d.severity),
            timestamp=when,
        )

    return None


class ChatActionExtractor:
    """
    Model-backed :class:`Extractor`.

    Args:
        config: Endpoint, extractor model and key settings.
        transport: Optional pre-built transport (tests inject one).
        clock: Source of "now" for the prompt's reference timestamp.
    """

    def __init__(
        self,
        config: EnrichmentConfig,
        transport: Optional[ChatCompletionsTransport] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._model = config.extractor_model
        self._timeout = config.request_timeout_s
        self._clock = clock or SystemClock()
        self._transport = transport or ChatCompletionsTransport(
            base_url=config.base_url, api_key=config.api_key,
        )

    def extract(self, text: str) -> List[Action]:
        raw = self._transport.complete_json(
            model=self._model,
            messages=[
                {"role": "system", "content": _SYSTEM_MESSAGE},
                {
                    "role": "user",
                    "content": _PROMPT_TEMPLATE.format(
                        text=text, now=self._clock.wall().isoformat(),
                    ),
                },
            ],
            schema_name="voice_actions_response",
            schema=_ACTIONS_SCHEMA,
            timeout=self._timeout,
            max_tokens=600,
        )
        try:
            reply = _ActionsReply.model_validate(raw)
        except PydanticValidationError as exc:
            raise ExternalServiceError(f"Malformed extractor reply: {exc}") from exc

        actions: List[Action] = []
        for item in reply.actions:
            try:
                action = to_action(item)
            except PydanticValidationError as exc:
                logger.warning("Dropping malformed %s action: %s", item.type, exc)
                continue
            if action is None:
                logger.info("Dropping non-loggable action %s", item.type)
                continue
            actions.append(action)

        logger.info("Extracted %d action(s) from %r", len(actions), text)
        return actions
