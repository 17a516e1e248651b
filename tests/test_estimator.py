"""
tests/test_estimator.py — pytest tests for the chat-completions transport and
the nutrition macro estimator. HTTP is mocked; no network access.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
import requests

from plany.core.config import EnrichmentConfig
from plany.core.errors import EnrichmentError, EnrichmentErrorKind
from plany.enrichment.client import ChatCompletionsTransport
from plany.enrichment.estimator import MacroEstimator
from plany.store.models import FoodAttributes

_URL = "https://llm.test/v1/chat/completions"


def _response(status: int = 200, content=None, body=None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    if body is None:
        body = {"choices": [{"message": {"content": json.dumps(content)}}]}
    resp.json.return_value = body
    return resp


@pytest.fixture()
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture()
def estimator(session: MagicMock) -> MacroEstimator:
    transport = ChatCompletionsTransport(_URL, api_key="sk-test", session=session)
    return MacroEstimator(EnrichmentConfig(model="macro-model"), transport=transport)


# ──────────────────────────────────────────────────────────────
# Success
# ──────────────────────────────────────────────────────────────

class TestEstimateSuccess:

    def test_returns_food_attributes(self, estimator, session) -> None:
        session.post.return_value = _response(
            content={"calories": 105, "protein": 1, "carbs": 27, "fat": 0}
        )
        assert estimator.estimate("1 medium banana", timeout=5.0) == FoodAttributes(105, 1, 27, 0)

    def test_request_shape(self, estimator, session) -> None:
        session.post.return_value = _response(
            content={"calories": 105, "protein": 1, "carbs": 27, "fat": 0}
        )
        estimator.estimate("1 medium banana", timeout=4.5)

        args, kwargs = session.post.call_args
        assert args == (_URL,)
        assert kwargs["timeout"] == 4.5
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
        payload = kwargs["json"]
        assert payload["model"] == "macro-model"
        assert payload["response_format"]["json_schema"]["name"] == "food_macros_response"
        assert payload["response_format"]["json_schema"]["strict"] is True
        assert "1 medium banana" in payload["messages"][1]["content"]

    def test_no_auth_header_without_key(self, session) -> None:
        session.post.return_value = _response(
            content={"calories": 1, "protein": 0, "carbs": 0, "fat": 0}
        )
        transport = ChatCompletionsTransport(_URL, api_key=None, session=session)
        MacroEstimator(EnrichmentConfig(), transport=transport).estimate("gum", timeout=1.0)
        assert "Authorization" not in session.post.call_args.kwargs["headers"]


# ──────────────────────────────────────────────────────────────
# Failure classification
# ──────────────────────────────────────────────────────────────

class TestEstimateFailures:

    @pytest.mark.parametrize("status, kind", [
        (429, EnrichmentErrorKind.RATE_LIMITED),
        (500, EnrichmentErrorKind.NETWORK),
        (503, EnrichmentErrorKind.NETWORK),
        (400, EnrichmentErrorKind.INVALID_RESPONSE),
        (401, EnrichmentErrorKind.INVALID_RESPONSE),
    ])
    def test_http_status(self, estimator, session, status, kind) -> None:
        session.post.return_value = _response(status=status, body={})
        with pytest.raises(EnrichmentError) as exc_info:
            estimator.estimate("banana", timeout=1.0)
        assert exc_info.value.kind is kind

    def test_timeout(self, estimator, session) -> None:
        session.post.side_effect = requests.exceptions.ReadTimeout("slow")
        with pytest.raises(EnrichmentError) as exc_info:
            estimator.estimate("banana", timeout=1.0)
        assert exc_info.value.kind is EnrichmentErrorKind.TIMEOUT
        assert not exc_info.value.retryable

    def test_connection_error(self, estimator, session) -> None:
        session.post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(EnrichmentError) as exc_info:
            estimator.estimate("banana", timeout=1.0)
        assert exc_info.value.kind is EnrichmentErrorKind.NETWORK
        assert exc_info.value.retryable

    @pytest.mark.parametrize("body", [
        {},
        {"choices": []},
        {"choices": [{"message": {"content": "not json"}}]},
        {"choices": [{"message": {"content": "[1, 2]"}}]},
    ])
    def test_unparseable_body(self, estimator, session, body) -> None:
        session.post.return_value = _response(body=body)
        with pytest.raises(EnrichmentError) as exc_info:
            estimator.estimate("banana", timeout=1.0)
        assert exc_info.value.kind is EnrichmentErrorKind.INVALID_RESPONSE

    @pytest.mark.parametrize("content", [
        {"calories": 105, "protein": 1, "carbs": 27},
        {"calories": -5, "protein": 1, "carbs": 27, "fat": 0},
        {"calories": "105", "protein": 1, "carbs": 27, "fat": 0},
        {"calories": 105, "protein": 1, "carbs": 27, "fat": 0, "fiber": 3},
    ])
    def test_schema_violation(self, estimator, session, content) -> None:
        session.post.return_value = _response(content=content)
        with pytest.raises(EnrichmentError) as exc_info:
            estimator.estimate("banana", timeout=1.0)
        assert exc_info.value.kind is EnrichmentErrorKind.INVALID_RESPONSE

    def test_empty_query_skips_http(self, estimator, session) -> None:
        with pytest.raises(EnrichmentError) as exc_info:
            estimator.estimate("   ", timeout=1.0)
        assert exc_info.value.kind is EnrichmentErrorKind.INVALID_RESPONSE
        session.post.assert_not_called()
