from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
from PIL import Image

import resale_assistant.analysis.providers as providers
from resale_assistant.analysis.providers import (
    ADAPTERS,
    OPENROUTER_TITLE,
    _extract_json,
    _parse_price_text,
)
from resale_assistant.analysis.service import analyze, run_analysis
from resale_assistant.analysis.types import AnalysisError
from resale_assistant.cancellation import CancellationToken, OperationCancelled
from resale_assistant.settings import AppSettings, Provider
from resale_assistant.vision.image import encode_jpeg

ENV = {
    "GEMINI_API_KEY": "g-key",
    "OPENAI_API_KEY": "o-key",
    "ANTHROPIC_API_KEY": "a-key",
    "XAI_API_KEY": "x-key",
    "OPENROUTER_API_KEY": "r-key",
}

LISTING = {
    "description": "Nike Air Max 90 Sort str. 42",
    "price": 450,
    "priceNew": "1.199 kr",
    "brand": "Nike",
    "type": "Sneakers",
    "color": "Sort",
    "size": "42",
    "material": "ukendt",
    "similarLinks": [
        "https://www.trendsales.dk/a",
        {"title": "DBA", "url": "https://www.dba.dk/b"},
        "https://www.trendsales.dk/a",
    ],
}


def _data_url() -> str:
    return encode_jpeg(Image.new("RGB", (32, 24), color=(200, 10, 10)), 80).to_data_url()


def _completion(
    content: Any, finish_reason: str = "stop", usage: dict[str, Any] | None = None
) -> dict[str, Any]:
    return {
        "choices": [
            {
                "finish_reason": finish_reason,
                "message": {"role": "assistant", "content": content},
            }
        ],
        "usage": usage
        or {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150, "cost": 0.002},
    }


class _Recorder:
    def __init__(self, response: Any = None, exc: Exception | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.response = response
        self.exc = exc

    def __call__(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.exc is not None:
            raise self.exc
        return self.response


@pytest.fixture
def fake_completion(monkeypatch: pytest.MonkeyPatch) -> _Recorder:
    rec = _Recorder(_completion(json.dumps(LISTING)))
    monkeypatch.setattr(providers.litellm, "completion", rec)
    return rec


def test_openrouter_request_envelope_and_normalized_result(fake_completion: _Recorder) -> None:
    url = _data_url()
    resp = run_analysis(
        [url, url], "openrouter", "openai/gpt-4.1", "PROMPT", timeout_s=30.0, environ=ENV
    )
    call = fake_completion.calls[0]
    assert call["model"] == "openrouter/openai/gpt-4.1"
    assert call["api_key"] == "r-key"
    assert call["api_base"] == "https://openrouter.ai/api/v1"
    assert call["extra_headers"]["X-Title"] == OPENROUTER_TITLE
    assert "HTTP-Referer" in call["extra_headers"]
    assert call["timeout"] == 30.0
    assert "response_format" not in call
    user = call["messages"][1]["content"]
    assert user[0] == {"type": "text", "text": "PROMPT"}
    assert [p["type"] for p in user[1:]] == ["image_url", "image_url"]

    r = resp.result
    assert r.price == 450.0
    assert r.price_new == 1199.0
    assert r.similar_links == ("https://www.trendsales.dk/a", "https://www.dba.dk/b")
    assert r.missing_fields() == ["material", "condition", "style"]
    assert resp.usage.total_tokens == 150
    assert resp.usage.cost_usd == pytest.approx(0.002)
    assert resp.to_dict()["usage"]["costUsd"] == pytest.approx(0.002)


def test_openai_uses_strict_schema(fake_completion: _Recorder) -> None:
    run_analysis([_data_url()], "openai", "gpt-4.1", "P", timeout_s=5.0, environ=ENV)
    call = fake_completion.calls[0]
    assert call["model"] == "openai/gpt-4.1"
    assert call["response_format"]["type"] == "json_schema"
    assert call["response_format"]["json_schema"]["schema"]["required"] == ["description", "price"]
    assert call["temperature"] == pytest.approx(0.1)


def test_gemini_puts_images_first_and_enables_search(fake_completion: _Recorder) -> None:
    run_analysis([_data_url()], "google", "gemini-2.5-flash", "P", timeout_s=5.0, environ=ENV)
    call = fake_completion.calls[0]
    assert call["model"] == "gemini/gemini-2.5-flash"
    assert call["api_key"] == "g-key"
    parts = call["messages"][0]["content"]
    assert [p["type"] for p in parts] == ["image_url", "text"]
    assert call["tools"] == [{"googleSearch": {}}]


def test_xai_strips_fenced_json(monkeypatch: pytest.MonkeyPatch) -> None:
    text = "Here you go:\n```json\n" + json.dumps(LISTING) + "\n```\nGood luck!"
    rec = _Recorder(_completion(text))
    monkeypatch.setattr(providers.litellm, "completion", rec)
    resp = run_analysis([_data_url()], "xai", "grok-4-fast", "P", timeout_s=5.0, environ=ENV)
    assert resp.result.brand == "Nike"
    call = rec.calls[0]
    assert call["api_base"] == "https://api.x.ai/v1"
    assert call["messages"][0]["content"] == providers.GROK_SYSTEM_PROMPT


def test_anthropic_envelope(fake_completion: _Recorder) -> None:
    run_analysis([_data_url()], "anthropic", "claude-x", "P", timeout_s=5.0, environ=ENV)
    call = fake_completion.calls[0]
    assert call["model"] == "anthropic/claude-x"
    assert [p["type"] for p in call["messages"][1]["content"]] == ["image_url", "text"]
    assert call["max_tokens"] == 2048


@pytest.mark.parametrize(
    ("provider", "finish_reason"),
    [
        ("google", "SAFETY"),
        ("openai", "content_filter"),
        ("anthropic", "refusal"),
    ],
)
def test_empty_answer_with_safety_signal_is_safety(
    monkeypatch: pytest.MonkeyPatch, provider: str, finish_reason: str
) -> None:
    monkeypatch.setattr(
        providers.litellm, "completion", _Recorder(_completion(None, finish_reason))
    )
    with pytest.raises(AnalysisError) as ei:
        run_analysis([_data_url()], provider, "m", "P", timeout_s=5.0, environ=ENV)
    assert ei.value.kind == "safety"


def test_empty_answer_without_safety_signal_is_parse(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(providers.litellm, "completion", _Recorder(_completion("", "stop")))
    with pytest.raises(AnalysisError) as ei:
        run_analysis([_data_url()], "openai", "m", "P", timeout_s=5.0, environ=ENV)
    assert ei.value.kind == "parse"


def test_non_json_answer_is_parse(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        providers.litellm, "completion", _Recorder(_completion("I think it's a shoe."))
    )
    with pytest.raises(AnalysisError) as ei:
        run_analysis([_data_url()], "openrouter", "m", "P", timeout_s=5.0, environ=ENV)
    assert ei.value.kind == "parse"


def test_missing_price_is_parse(monkeypatch: pytest.MonkeyPatch) -> None:
    body = json.dumps({"description": "Shoe", "price": "ukendt"})
    monkeypatch.setattr(providers.litellm, "completion", _Recorder(_completion(body)))
    with pytest.raises(AnalysisError) as ei:
        run_analysis([_data_url()], "openrouter", "m", "P", timeout_s=5.0, environ=ENV)
    assert ei.value.kind == "parse"


def test_transport_errors_are_network(monkeypatch: pytest.MonkeyPatch) -> None:
    rec = _Recorder(exc=httpx.ConnectError("connection refused"))
    monkeypatch.setattr(providers.litellm, "completion", rec)
    with pytest.raises(AnalysisError) as ei:
        run_analysis([_data_url()], "openai", "m", "P", timeout_s=5.0, environ=ENV)
    assert ei.value.kind == "network"
    assert ei.value.status_code == 500


def test_other_upstream_errors_are_api(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        providers.litellm, "completion", _Recorder(exc=RuntimeError("quota exceeded"))
    )
    with pytest.raises(AnalysisError) as ei:
        run_analysis([_data_url()], "openai", "m", "P", timeout_s=5.0, environ=ENV)
    assert ei.value.kind == "api"
    assert "quota exceeded" in ei.value.message


def test_zero_images_fail_with_format_and_no_call(fake_completion: _Recorder) -> None:
    with pytest.raises(AnalysisError) as ei:
        analyze([], AppSettings(), environ=ENV)
    assert ei.value.kind == "format"
    assert ei.value.status_code == 400
    assert fake_completion.calls == []


def test_malformed_data_url_is_format(fake_completion: _Recorder) -> None:
    with pytest.raises(AnalysisError) as ei:
        analyze(["not-a-data-url"], AppSettings(), environ=ENV)
    assert ei.value.kind == "format"
    assert fake_completion.calls == []


def test_unknown_provider_and_missing_key_are_api(fake_completion: _Recorder) -> None:
    with pytest.raises(AnalysisError) as ei:
        run_analysis([_data_url()], "mistral", "m", "P", timeout_s=5.0, environ=ENV)
    assert (ei.value.kind, ei.value.status_code) == ("api", 400)

    with pytest.raises(AnalysisError) as ei:
        run_analysis([_data_url()], "openai", "m", "P", timeout_s=5.0, environ={})
    assert (ei.value.kind, ei.value.status_code) == ("api", 500)
    assert "OPENAI_API_KEY" in ei.value.message
    assert fake_completion.calls == []


def test_analyze_builds_prompt_from_settings(fake_completion: _Recorder) -> None:
    settings = AppSettings(provider="openai", model="gpt-4.1", language="English", currency="EUR")
    analyze([_data_url()], settings, "Bought in 2021", environ=ENV)
    prompt = fake_completion.calls[0]["messages"][1]["content"][0]["text"]
    assert "{currency}" not in prompt and "EUR" in prompt
    assert "Trendsales" in prompt
    assert prompt.endswith("USER CONTEXT (important!): Bought in 2021")


def test_cancelled_token_skips_the_call(fake_completion: _Recorder) -> None:
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelled):
        analyze([_data_url()], AppSettings(), environ=ENV, token=token)
    assert fake_completion.calls == []


def test_late_answer_after_cancel_is_dropped(monkeypatch: pytest.MonkeyPatch) -> None:
    token = CancellationToken()

    def completion(**_: Any) -> dict[str, Any]:
        token.cancel("view closed")
        return _completion(json.dumps(LISTING))

    monkeypatch.setattr(providers.litellm, "completion", completion)
    with pytest.raises(OperationCancelled):
        analyze([_data_url()], AppSettings(), environ=ENV, token=token)


def test_every_provider_has_an_adapter() -> None:
    assert set(ADAPTERS) == set(Provider)


def test_adapter_parse_coerces_prices_and_nulls() -> None:
    adapter = ADAPTERS[Provider.OPENROUTER]
    result = adapter.parse(json.dumps({"description": "Bag", "price": "1.200,50 kr", "brand": None}))
    assert result.price == pytest.approx(1200.5)
    assert result.brand == ""


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("250", 250.0),
        ("250 kr", 250.0),
        ("1.200 kr", 1200.0),
        ("1.200,50", 1200.5),
        ("$1,200.50", 1200.5),
        ("1,200", 1200.0),
        ("12,5", 12.5),
        ("ca. 99.95 EUR", 99.95),
        ("unknown", None),
    ],
)
def test_parse_price_text(text: str, expected: float | None) -> None:
    assert _parse_price_text(text) == expected


def test_extract_json_handles_fences_and_noise() -> None:
    assert _extract_json('```\n{"a": 1}\n```') == '{"a": 1}'
    assert _extract_json('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert _extract_json('Sure! {"a": 1} Thanks') == '{"a": 1}'
    assert _extract_json('{"a": 1}') == '{"a": 1}'
