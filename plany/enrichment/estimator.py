"""
plany/enrichment/estimator.py — Nutrition macro estimation for FOOD entries.

Sends a portion-aware prompt to an OpenAI-compatible model with a strict JSON
schema and validates the reply with pydantic before returning
:class:`~plany.store.models.FoodAttributes`.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from plany.core.config import EnrichmentConfig
from plany.core.errors import EnrichmentError, EnrichmentErrorKind
from plany.enrichment.client import ChatCompletionsTransport
from plany.store.models import FoodAttributes

logger = logging.getLogger(__name__)

_SYSTEM_MESSAGE = (
    "You are a nutrition expert that provides accurate macro estimates for foods."
)

_PROMPT_TEMPLATE = """Estimate nutritional macros for: "{food}"

- Pay close attention to quantity descriptors (tiny, small, medium, large, handful).
- Pay close attention to counts (1, 2, half, quarter).
- Use USDA nutritional data.
- "tiny"/"small" = 50-70% of a standard serving; "large" = 150-200%;
  "handful" ≈ 28 g; "bowl" ≈ 1.5-2 cups; "plate" ≈ 2-3 cups.

Provide nutritional information for the exact portion described."""

_MACROS_SCHEMA = {
    "type": "object",
    "properties": {
        "calories": {"type": "integer", "description": "Total calories for the portion"},
        "protein": {"type": "integer", "description": "Protein in grams"},
        "carbs": {"type": "integer", "description": "Carbohydrates in grams"},
        "fat": {"type": "integer", "description": "Fat in grams"},
    },
    "required": ["calories", "protein", "carbs", "fat"],
    "additionalProperties": False,
}


class MacroReply(BaseModel):
    """Validated shape of the model's JSON reply."""

    model_config = ConfigDict(extra="forbid", strict=True)

    calories: int = Field(ge=0)
    protein: int = Field(ge=0)
    carbs: int = Field(ge=0)
    fat: int = Field(ge=0)


class MacroEstimator:
    """
    :class:`~plany.enrichment.client.EnrichmentClient` for FOOD entries.

    Args:
        config: Endpoint, model and key settings.
        transport: Optional pre-built transport (tests inject one).
    """

    def __init__(
        self,
        config: EnrichmentConfig,
        transport: Optional[ChatCompletionsTransport] = None,
    ) -> None:
        self._model = config.model
        self._transport = transport or ChatCompletionsTransport(
            base_url=config.base_url, api_key=config.api_key,
        )

    def estimate(self, query: str, timeout: float) -> FoodAttributes:
        """
        Estimate macros for the food described by *query*.

        Raises:
            EnrichmentError: Transport failures, or INVALID_RESPONSE when the
                reply does not match the macro schema.
        """
        if not query.strip():
            raise EnrichmentError(EnrichmentErrorKind.INVALID_RESPONSE, "empty query")

        raw = self._transport.complete_json(
            model=self._model,
            messages=[
                {"role": "system", "content": _SYSTEM_MESSAGE},
                {"role": "user", "content": _PROMPT_TEMPLATE.format(food=query)},
            ],
            schema_name="food_macros_response",
            schema=_MACROS_SCHEMA,
            timeout=timeout,
            max_tokens=150,
        )
        try:
            reply = MacroReply.model_validate(raw)
        except PydanticValidationError as exc:
            logger.warning("Macro reply failed validation for %r: %s", query, exc)
            raise EnrichmentError(EnrichmentErrorKind.INVALID_RESPONSE, str(exc)) from exc

        logger.info(
            "Estimated %r: %d kcal, P%d C%d F%d",
            query, reply.calories, reply.protein, reply.carbs, reply.fat,
        )
        return FoodAttributes(
            calories=reply.calories,
            protein=reply.protein,
            carbs=reply.carbs,
            fat=reply.fat,
        )
