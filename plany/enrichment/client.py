"""
plany/enrichment/client.py — Enrichment client contract and HTTP transport.

:class:`EnrichmentClient` is what the task orchestrator depends on.
:class:`ChatCompletionsTransport` executes one OpenAI-compatible
chat-completions request and folds every transport failure into a single
:class:`~plany.core.errors.EnrichmentError` surface. It never retries; retry
policy is owned by the orchestrator.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import requests

from plany.core.errors import EnrichmentError, EnrichmentErrorKind
from plany.core.logger import get_logger
from plany.store.models import Attributes

logger = logging.getLogger(__name__)
_log = get_logger()


class EnrichmentClient(Protocol):
    """
    Turns a textual query into structured attributes.

    Implementations raise :class:`EnrichmentError` on failure and must honour
    *timeout* (seconds) as an upper bound on the call. The orchestrator stops
    waiting after *timeout* but cannot interrupt the call; one that never
    returns keeps a pool thread busy, and once every pool thread is held that
    way later jobs time out without reaching the client.
    """

    def estimate(self, query: str, timeout: float) -> Attributes:
        ...


class ChatCompletionsTransport:
    """
    Minimal OpenAI-compatible chat-completions caller.

    Args:
        base_url: Full URL of the ``/chat/completions`` endpoint.
        api_key: Bearer token; ``None`` for keyless local servers.
        session: Optional pre-built :class:`requests.Session` (tests inject one).
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._url = base_url
        self._api_key = api_key
        self._session = session or requests.Session()

    def complete_json(
        self,
        model: str,
        messages: List[Dict[str, str]],
        schema_name: str,
        schema: Dict[str, Any],
        timeout: float,
        max_tokens: int = 300,
    ) -> Dict[str, Any]:
        """
        Request a structured (JSON-schema constrained) completion.

        Returns:
            The decoded JSON object the model produced.

        Raises:
            EnrichmentError: TIMEOUT, NETWORK, RATE_LIMITED or INVALID_RESPONSE.
        """
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        payload = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": schema_name, "strict": True, "schema": schema},
            },
        }

        t0 = time.perf_counter()
        try:
            response = self._session.post(
                self._url, headers=headers, json=payload, timeout=timeout,
            )
        except requests.exceptions.Timeout as exc:
            raise EnrichmentError(EnrichmentErrorKind.TIMEOUT, str(exc)) from exc
        except requests.exceptions.RequestException as exc:
            raise EnrichmentError(EnrichmentErrorKind.NETWORK, str(exc)) from exc

        _log.perf("enrichment", "http_response", (time.perf_counter() - t0) * 1_000.0, {
            "schema": schema_name,
            "status_code": response.status_code,
        })

        status = response.status_code
        if status == 429:
            raise EnrichmentError(EnrichmentErrorKind.RATE_LIMITED, "HTTP 429")
        if status >= 500:
            raise EnrichmentError(EnrichmentErrorKind.NETWORK, f"HTTP {status}")
        if status != 200:
            raise EnrichmentError(EnrichmentErrorKind.INVALID_RESPONSE, f"HTTP {status}")

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
            decoded = json.loads(content)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Unparseable %s response: %s", schema_name, exc)
            raise EnrichmentError(
                EnrichmentErrorKind.INVALID_RESPONSE, f"unparseable body: {exc}"
            ) from exc

        if not isinstance(decoded, dict):
            raise EnrichmentError(
                EnrichmentErrorKind.INVALID_RESPONSE,
                f"expected JSON object, got {type(decoded).__name__}",
            )
        return decoded
