"""
plany/intent/classifier.py — Decides whether a transcript contains a loggable action.

The pipeline controller depends only on the :class:`Classifier` protocol.
:class:`KeywordClassifier` is a local heuristic that needs no network and is
used by the CLI and the tests; a model-backed classifier can replace it
without touching the controller.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    """
    Result of classifying one transcript.

    Attributes:
        has_action: True if the text describes something to log.
        confidence: Certainty in ``[0, 1]``.
    """

    has_action: bool
    confidence: float


class Classifier(Protocol):
    """Raises :class:`~plany.core.errors.ExternalServiceError` on failure."""

    def classify(self, text: str) -> Classification:
        ...


# Verbs that introduce an intake or a report, and nouns that only make sense
# in a health log. A verb alone is weaker evidence than a verb plus a noun.
_ACTION_VERBS: frozenset[str] = frozenset({
    "ate", "eat", "eaten", "eating", "had", "have", "having",
    "drank", "drink", "drinking", "took", "take", "taken", "taking",
    "feel", "feeling", "felt", "log", "logged",
})

_HEALTH_NOUNS: frozenset[str] = frozenset({
    "water", "oz", "ml", "glass", "cup", "bottle", "juice", "tea", "coffee",
    "breakfast", "lunch", "dinner", "snack", "meal",
    "vitamin", "vitamins", "prenatal", "supplement", "pill", "tablet", "capsule",
    "nausea", "nauseous", "headache", "tired", "dizzy", "cramps", "sick",
    "banana", "apple", "eggs", "toast", "pizza", "salad", "pasta", "rice",
})

_WORD_RE = re.compile(r"[a-z]+")


class KeywordClassifier:
    """
    Vocabulary-based :class:`Classifier`.

    Scores ``0.9`` when the text has both an action verb and a health noun,
    ``0.6`` for a verb alone and ``0.5`` for a noun alone. A bare meal
    description ("two eggs and toast") therefore reaches the default
    ``pipeline.min_confidence`` of ``0.5``.
    """

    def classify(self, text: str) -> Classification:
        words = set(_WORD_RE.findall(text.lower()))
        has_verb = bool(words & _ACTION_VERBS)
        has_noun = bool(words & _HEALTH_NOUNS)

        if has_verb and has_noun:
            confidence = 0.9
        elif has_verb:
            confidence = 0.6
        elif has_noun:
            confidence = 0.5
        else:
            confidence = 0.0

        result = Classification(has_action=confidence > 0.0, confidence=confidence)
        logger.debug("Classified %r -> %s", text, result)
        return result
